"""
Record Store

Thread-safe record collections, optionally persisted as a single JSON
document. Every mutation is written atomically (temp file + os.replace) so a
crash never leaves a truncated store behind.

Records are plain dicts. The store assigns `id`, `created` and `updated`;
`created` ties are broken by an insertion sequence so FIFO ordering holds.
"""

import copy
import json
import logging
import os
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Iterable

from spotube.core.errors import InternalError
from spotube.core.models import to_iso, utcnow

logger = logging.getLogger(__name__)

Predicate = Callable[[dict], bool]


def _new_id() -> str:
    return uuid.uuid4().hex[:15]


class RecordStore:
    def __init__(self, path: Path | None = None):
        self._path = path
        self._lock = threading.RLock()
        self._collections: dict[str, dict[str, dict]] = {}
        self._seq = 0
        self._signature: tuple | None = None
        if path is not None:
            self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise InternalError(f"Failed to load record store {self._path}: {e}")
        self._collections = data.get("collections", {})
        self._seq = data.get("seq", 0)
        self._signature = self._file_signature()
        logger.debug(f"Loaded record store: {self.counts()}")

    def _save(self) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".store_", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump({"seq": self._seq, "collections": self._collections}, f, separators=(",", ":"))
                os.replace(temp_path, self._path)
                self._signature = self._file_signature()
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
        except OSError as e:
            raise InternalError(f"Failed to save record store: {e}")

    def _file_signature(self) -> tuple:
        stat = self._path.stat()
        return stat.st_ino, stat.st_mtime_ns, stat.st_size

    def _reload_if_changed(self) -> None:
        """Pick up writes made by another process, such as the CLI editing mappings."""
        if self._path is None or not self._path.exists():
            return
        if self._file_signature() != self._signature:
            logger.debug(f"Record store {self._path} changed on disk, reloading")
            self._load()

    def _collection(self, name: str) -> dict[str, dict]:
        self._reload_if_changed()
        return self._collections.setdefault(name, {})

    @staticmethod
    def _matches(record: dict, where: dict | None, predicate: Predicate | None) -> bool:
        if where:
            for key, expected in where.items():
                actual = record.get(key)
                if isinstance(expected, (list, tuple, set, frozenset)):
                    if actual not in expected:
                        return False
                elif actual != expected:
                    return False
        return predicate is None or predicate(record)

    def insert(self, collection: str, record: dict, record_id: str | None = None) -> dict:
        with self._lock:
            records = self._collection(collection)
            rid = record_id or record.get("id") or _new_id()
            if rid in records:
                raise InternalError(f"Duplicate id {rid} in {collection}")
            now = to_iso(utcnow())
            self._seq += 1
            stored = {**copy.deepcopy(record), "id": rid, "created": now, "updated": now, "_seq": self._seq}
            records[rid] = stored
            self._save()
            return copy.deepcopy(stored)

    def get(self, collection: str, record_id: str) -> dict | None:
        with self._lock:
            record = self._collection(collection).get(record_id)
            return copy.deepcopy(record) if record else None

    def find(self, collection: str, where: dict | None = None, predicate: Predicate | None = None,
             order_by: str = "created", descending: bool = False, limit: int | None = None) -> list[dict]:
        """Return matching records sorted by `order_by` (insertion order breaks ties)."""
        with self._lock:
            found = [r for r in self._collection(collection).values()
                     if self._matches(r, where, predicate)]
            found.sort(key=lambda r: (r.get(order_by) or "", r.get("_seq", 0)), reverse=descending)
            if limit is not None:
                found = found[:limit]
            return copy.deepcopy(found)

    def find_first(self, collection: str, where: dict | None = None,
                   predicate: Predicate | None = None) -> dict | None:
        found = self.find(collection, where, predicate, limit=1)
        return found[0] if found else None

    def count(self, collection: str, where: dict | None = None) -> int:
        with self._lock:
            return sum(1 for r in self._collection(collection).values() if self._matches(r, where, None))

    def update(self, collection: str, record_id: str, changes: dict) -> dict:
        with self._lock:
            record = self._collection(collection).get(record_id)
            if record is None:
                raise InternalError(f"{collection}/{record_id} not found")
            record.update(copy.deepcopy(changes))
            record["updated"] = to_iso(utcnow())
            self._save()
            return copy.deepcopy(record)

    def compare_and_update(self, collection: str, record_id: str, expected: dict, changes: dict) -> bool:
        """Apply `changes` only if every field in `expected` still holds. Returns True on success."""
        with self._lock:
            record = self._collection(collection).get(record_id)
            if record is None or not self._matches(record, expected, None):
                return False
            record.update(copy.deepcopy(changes))
            record["updated"] = to_iso(utcnow())
            self._save()
            return True

    def delete(self, collection: str, record_id: str) -> bool:
        with self._lock:
            removed = self._collection(collection).pop(record_id, None)
            if removed is not None:
                self._save()
            return removed is not None

    def delete_where(self, collection: str, where: dict | None, predicate: Predicate | None = None) -> int:
        with self._lock:
            records = self._collection(collection)
            doomed = [rid for rid, r in records.items() if self._matches(r, where, predicate)]
            for rid in doomed:
                del records[rid]
            if doomed:
                self._save()
            return len(doomed)

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {name: len(records) for name, records in self._collections.items()}

    def transaction(self) -> threading.RLock:
        """Hold the store lock across several calls (check-then-insert)."""
        return self._lock


def strip_internal(records: Iterable[dict]) -> list[dict[str, Any]]:
    return [{k: v for k, v in r.items() if not k.startswith("_")} for r in records]
