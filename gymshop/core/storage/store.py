"""
File-backed document store.

Each collection lives in ``<root>/<collection>.json`` as
``{"kind": <collection>, "items": {<id>: <record>}}``. A collection file is
replaced whole (temp file plus ``os.replace``), so readers never observe a
half-written document. The outermost transaction holds an exclusive flock on
``<root>/.lock`` so that a second process (the maintenance tool, for
instance) cannot interleave its read-modify-write with ours.

Writes go through ``Database.transaction()``: staged collections are flushed
together when the outermost block exits cleanly and dropped when it raises.
Nested blocks join the outer one.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Generic, Iterator, List, Optional, Set, Type, TypeVar

from pydantic import BaseModel

from gymshop.core.errors import NotFound

try:
    import fcntl as _fcntl
    _HAS_FCNTL = True
except ImportError:
    _HAS_FCNTL = False
    logging.getLogger("gymshop.storage").warning(
        "fcntl not available (non-POSIX). File locking is disabled. "
        "Do not run concurrent writers against the same data root on this platform."
    )

log = logging.getLogger("gymshop.storage")

LOCK_FILE = ".lock"

M = TypeVar("M", bound=BaseModel)
Items = Dict[str, Dict[str, Any]]


@contextmanager
def _locked_file(path: Path, mode: str) -> Generator:
    """Open a file and apply an exclusive flock (POSIX only). No-op on Windows."""
    with open(path, mode, encoding="utf-8") as fh:
        if _HAS_FCNTL:
            _fcntl.flock(fh, _fcntl.LOCK_EX)
        try:
            yield fh
        finally:
            if _HAS_FCNTL:
                _fcntl.flock(fh, _fcntl.LOCK_UN)


class Database:
    def __init__(self, *, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._local = threading.local()

    # ------------------------------------------------------------
    # Raw file access
    # ------------------------------------------------------------
    def _path(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def _read(self, name: str) -> Items:
        p = self._path(name)
        if not p.exists():
            return {}
        raw = p.read_text(encoding="utf-8")
        if not raw.strip():
            return {}
        doc = json.loads(raw)
        items = doc.get("items") if isinstance(doc, dict) else None
        return dict(items) if isinstance(items, dict) else {}

    def _write(self, name: str, items: Items) -> None:
        p = self._path(name)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(f".{p.name}.{uuid.uuid4().hex}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as fh:
                fh.write(json.dumps({"kind": name, "items": items}, indent=2, sort_keys=True))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, p)
        finally:
            if tmp.exists():
                tmp.unlink()

    # ------------------------------------------------------------
    # Transaction staging
    # ------------------------------------------------------------
    def _staged(self) -> Optional[Items]:
        return getattr(self._local, "staged", None)

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "depth", 0) > 0

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        with self._lock, ExitStack() as stack:
            depth = getattr(self._local, "depth", 0)
            if depth == 0:
                stack.enter_context(_locked_file(self.root / LOCK_FILE, "a"))
                self._local.staged = {}
                self._local.dirty = set()
            self._local.depth = depth + 1
            try:
                yield self
                if depth == 0:
                    dirty: Set[str] = self._local.dirty
                    for name in sorted(dirty):
                        self._write(name, self._local.staged[name])
            finally:
                self._local.depth = depth
                if depth == 0:
                    self._local.staged = None
                    self._local.dirty = None

    def load(self, name: str) -> Items:
        staged = self._staged()
        if staged is not None:
            if name not in staged:
                staged[name] = self._read(name)
            return staged[name]
        return self._read(name)

    def store(self, name: str, items: Items) -> None:
        if not self.in_transaction:
            raise RuntimeError("Database.store() must run inside transaction()")
        self._local.staged[name] = items
        self._local.dirty.add(name)

    def collection(self, name: str, model: Type[M]) -> "Collection[M]":
        return Collection(self, name, model)


class Collection(Generic[M]):
    """Typed view over one collection; records must expose an ``id`` field."""

    def __init__(self, db: Database, name: str, model: Type[M]):
        self.db = db
        self.name = name
        self.model = model

    def _items(self) -> Items:
        return self.db.load(self.name)

    def get(self, item_id: Optional[str]) -> Optional[M]:
        if not item_id:
            return None
        raw = self._items().get(item_id)
        return self.model.model_validate(raw) if raw is not None else None

    def require(self, item_id: Optional[str], what: Optional[str] = None) -> M:
        obj = self.get(item_id)
        if obj is None:
            raise NotFound(f"{what or self.model.__name__} not found")
        return obj

    def put(self, obj: M) -> M:
        with self.db.transaction():
            items = self._items()
            items[getattr(obj, "id")] = obj.model_dump(mode="json")
            self.db.store(self.name, items)
        return obj

    def delete(self, item_id: str) -> bool:
        with self.db.transaction():
            items = self._items()
            if item_id not in items:
                return False
            del items[item_id]
            self.db.store(self.name, items)
        return True

    def all(self) -> List[M]:
        return [self.model.model_validate(v) for v in self._items().values()]

    def find(self, predicate: Callable[[M], bool]) -> List[M]:
        return [o for o in self.all() if predicate(o)]

    def find_one(self, predicate: Callable[[M], bool]) -> Optional[M]:
        for o in self.all():
            if predicate(o):
                return o
        return None

    def count(self, predicate: Optional[Callable[[M], bool]] = None) -> int:
        if predicate is None:
            return len(self._items())
        return len(self.find(predicate))


_DATABASES: Dict[str, Database] = {}
_DATABASES_LOCK = threading.Lock()


def open_database(root: Path) -> Database:
    key = str(Path(root).resolve())
    with _DATABASES_LOCK:
        db = _DATABASES.get(key)
        if db is None:
            log.info("opening data root %s", key)
            db = Database(root=Path(root))
            _DATABASES[key] = db
        return db
