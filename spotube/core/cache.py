"""
Search cache: (title, artist) -> destination track ID, kept for 30 days.

Resolved IDs spare the 100-unit YouTube search on retries and let analysis
recognise videos whose titles do not mention the track.
"""

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable

from spotube.core.matching import normalize

logger = logging.getLogger(__name__)

TTL_DAYS = 30
TTL_SECONDS = TTL_DAYS * 24 * 60 * 60


class SearchCache:
    def __init__(self, cache_file: Path | None = None, ttl_seconds: float = TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        self._file = cache_file
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, dict] = {}
        self._dirty = False
        self._lock = threading.Lock()
        self._entries = self._read()
        self.prune()

    def _read(self) -> dict[str, dict]:
        if self._file is None or not self._file.exists():
            return {}
        try:
            raw = json.loads(self._file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable search cache {self._file}: {e}")
            return {}
        entries = {key: value for key, value in raw.items() if isinstance(value, dict) and value.get("track_id")}
        logger.debug(f"Loaded {len(entries)} cached search results")
        return entries

    @staticmethod
    def _key(title: str, artist: str) -> str:
        return f"{normalize(title)}\x00{normalize(artist)}"

    def _expired(self, entry: dict) -> bool:
        return self._clock() - entry.get("cached_at", 0) > self._ttl

    def prune(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        with self._lock:
            stale = [key for key, entry in self._entries.items() if self._expired(entry)]
            for key in stale:
                del self._entries[key]
            if stale:
                self._dirty = True
                logger.info(f"Pruned {len(stale)} expired search cache entries")
            return len(stale)

    def get(self, title: str, artist: str) -> str | None:
        key = self._key(title, artist)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry):
                del self._entries[key]
                self._dirty = True
                return None
            return entry["track_id"]

    def set(self, title: str, artist: str, track_id: str) -> None:
        key = self._key(title, artist)
        with self._lock:
            if self._entries.get(key, {}).get("track_id") == track_id:
                return
            self._entries[key] = {"track_id": track_id, "cached_at": self._clock()}
            self._dirty = True

    def save(self) -> None:
        """Write the cache if it changed. Failures are logged; the cache is only an optimisation."""
        with self._lock:
            if self._file is None or not self._dirty:
                return
            snapshot = dict(self._entries)
            self._dirty = False

        try:
            self._file.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=self._file.parent, prefix=".cache_", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(snapshot, f, indent=2)
                os.replace(temp_path, self._file)
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
        except OSError as e:
            with self._lock:
                self._dirty = True
            logger.error(f"Search cache save failed: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
