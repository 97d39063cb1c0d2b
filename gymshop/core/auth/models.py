from __future__ import annotations

from dataclasses import dataclass
from typing import List

ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class Principal:
    subject: str
    roles: List[str]

    @property
    def is_anonymous(self) -> bool:
        return self.subject == ANONYMOUS


def anonymous() -> Principal:
    return Principal(subject=ANONYMOUS, roles=[ANONYMOUS])
