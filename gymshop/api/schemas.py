from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class StatusRequest(BaseModel):
    status: str


class RejectRequest(BaseModel):
    reason: Optional[str] = None
