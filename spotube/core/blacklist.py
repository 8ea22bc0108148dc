"""Blacklist gate: tracks that keep failing, or that the user excluded, per mapping and service."""

import logging

from spotube.core.models import BLACKLIST, BlacklistEntry, to_iso, utcnow
from spotube.core.store import RecordStore

logger = logging.getLogger(__name__)


class BlacklistGate:
    def __init__(self, store: RecordStore):
        self._store = store

    def _find(self, mapping_id: str, service: str, track_id: str) -> dict | None:
        return self._store.find_first(BLACKLIST, {
            "mapping_id": mapping_id, "service": service, "track_id": track_id,
        })

    def is_blacklisted(self, mapping_id: str, service: str, track_id: str) -> bool:
        return self._find(mapping_id, service, track_id) is not None

    def blacklisted_ids(self, mapping_id: str, service: str) -> set[str]:
        records = self._store.find(BLACKLIST, {"mapping_id": mapping_id, "service": service})
        return {r["track_id"] for r in records if r.get("track_id")}

    def record_skip(self, mapping_id: str, service: str, track_id: str, reason: str) -> BlacklistEntry:
        """Create the entry with skip_counter=1, or bump the counter of the existing one."""
        now = to_iso(utcnow())
        with self._store.transaction():
            existing = self._find(mapping_id, service, track_id)
            if existing:
                counter = int(existing.get("skip_counter") or 0) + 1
                record = self._store.update(BLACKLIST, existing["id"], {
                    "skip_counter": counter, "reason": reason, "last_skipped_at": now,
                })
                logger.info(f"Blacklist {service}/{track_id} for mapping {mapping_id}: "
                            f"skip_counter={counter} ({reason})")
            else:
                record = self._store.insert(BLACKLIST, {
                    "mapping_id": mapping_id,
                    "service": service,
                    "track_id": track_id,
                    "reason": reason,
                    "skip_counter": 1,
                    "last_skipped_at": now,
                })
                logger.info(f"Blacklisted {service}/{track_id} for mapping {mapping_id} ({reason})")
        return BlacklistEntry.from_record(record)

    def entries(self, mapping_id: str | None = None) -> list[BlacklistEntry]:
        where = {"mapping_id": mapping_id} if mapping_id else None
        return [BlacklistEntry.from_record(r) for r in self._store.find(BLACKLIST, where)]

    def remove(self, entry_id: str) -> bool:
        return self._store.delete(BLACKLIST, entry_id)
