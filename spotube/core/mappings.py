"""
Mapping management: validation, cached playlist names, cascade delete, manual
blacklist entries and requeueing of errored sync items.
"""

import logging
import math
from datetime import datetime
from typing import Callable, Mapping as MappingType

from spotube.clients.base import PlaylistAdapter
from spotube.core.activity import ActivityLogger
from spotube.core.blacklist import BlacklistGate
from spotube.core.errors import ProviderError, ValidationError
from spotube.core.models import (
    ACTIVE_STATUSES, BLACKLIST, DESTINATION_SERVICE, ERROR, MAPPINGS, PENDING, SKIPPED, SOURCE_SERVICE,
    SYNC_ITEMS, BlacklistEntry, Mapping, SyncItem, to_iso, utcnow,
)
from spotube.core.store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 60
EDITABLE = ("source_playlist_id", "destination_playlist_id", "sync_name", "sync_tracks", "interval_minutes")


class MappingService:
    def __init__(self, store: RecordStore, adapters: MappingType[str, PlaylistAdapter],
                 activity: ActivityLogger, blacklist: BlacklistGate, min_interval_minutes: int = 5,
                 clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._adapters = adapters
        self._activity = activity
        self._blacklist = blacklist
        self._min_interval = min_interval_minutes
        self._clock = clock

    def _validate(self, fields: dict) -> None:
        for key in ("source_playlist_id", "destination_playlist_id"):
            value = fields.get(key)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{key} is required")

        interval = fields.get("interval_minutes")
        if isinstance(interval, bool) or not isinstance(interval, (int, float)):
            raise ValidationError(f"interval_minutes must be a number, got {interval!r}")
        if not math.isfinite(interval):
            raise ValidationError(f"interval_minutes must be finite, got {interval}")
        if interval < self._min_interval:
            raise ValidationError(f"interval_minutes must be at least {self._min_interval}, got {interval}")
        if interval != int(interval):
            raise ValidationError(f"interval_minutes must be a whole number, got {interval}")

        for key in ("sync_name", "sync_tracks"):
            if not isinstance(fields.get(key), bool):
                raise ValidationError(f"{key} must be true or false")

    def _check_unique(self, source_id: str, destination_id: str, exclude_id: str = "") -> None:
        existing = self._store.find_first(MAPPINGS, {
            "source_playlist_id": source_id, "destination_playlist_id": destination_id,
        })
        if existing and existing["id"] != exclude_id:
            raise ValidationError(f"Mapping {source_id} -> {destination_id} already exists ({existing['id']})")

    def get(self, mapping_id: str) -> Mapping:
        record = self._store.get(MAPPINGS, mapping_id)
        if record is None:
            raise ValidationError(f"Mapping {mapping_id} not found")
        return Mapping.from_record(record)

    def list_mappings(self) -> list[Mapping]:
        return [Mapping.from_record(r) for r in self._store.find(MAPPINGS)]

    def create(self, source_playlist_id: str, destination_playlist_id: str, sync_name: bool = True,
               sync_tracks: bool = True, interval_minutes: int = DEFAULT_INTERVAL_MINUTES) -> Mapping:
        fields = {
            "source_playlist_id": source_playlist_id,
            "destination_playlist_id": destination_playlist_id,
            "sync_name": sync_name,
            "sync_tracks": sync_tracks,
            "interval_minutes": interval_minutes,
        }
        self._validate(fields)
        fields["interval_minutes"] = int(interval_minutes)

        with self._store.transaction():
            self._check_unique(source_playlist_id, destination_playlist_id)
            record = self._store.insert(MAPPINGS, {
                **fields,
                "source_playlist_name": "",
                "destination_playlist_name": "",
                "last_analyzed_at": "",
                "next_analysis_at": "",
            })

        mapping = Mapping.from_record(record)
        self._activity.info(f"Created mapping {mapping.id}: {source_playlist_id} -> {destination_playlist_id}",
                            "system")
        return self.refresh_names(mapping)

    def update(self, mapping_id: str, **changes) -> Mapping:
        unknown = set(changes) - set(EDITABLE)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        current = self.get(mapping_id)
        merged = {key: getattr(current, key) for key in EDITABLE}
        merged.update(changes)
        self._validate(merged)
        merged["interval_minutes"] = int(merged["interval_minutes"])

        ids_changed = (merged["source_playlist_id"] != current.source_playlist_id
                       or merged["destination_playlist_id"] != current.destination_playlist_id)
        with self._store.transaction():
            if ids_changed:
                self._check_unique(merged["source_playlist_id"], merged["destination_playlist_id"], mapping_id)
            record = self._store.update(MAPPINGS, mapping_id, merged)

        mapping = Mapping.from_record(record)
        if ids_changed:
            mapping = self.refresh_names(mapping)
        return mapping

    def delete(self, mapping_id: str) -> bool:
        """Delete a mapping together with its sync items and blacklist entries."""
        with self._store.transaction():
            if not self._store.delete(MAPPINGS, mapping_id):
                return False
            items = self._store.delete_where(SYNC_ITEMS, {"mapping_id": mapping_id})
            entries = self._store.delete_where(BLACKLIST, {"mapping_id": mapping_id})

        self._activity.info(f"Deleted mapping {mapping_id} ({items} sync items, {entries} blacklist entries)",
                            "system")
        return True

    def refresh_names(self, mapping: Mapping) -> Mapping:
        """Fetch both playlist names and cache them on the mapping. Provider failures are logged only."""
        names = {}
        for service, key in ((SOURCE_SERVICE, "source_playlist_name"),
                             (DESTINATION_SERVICE, "destination_playlist_name")):
            try:
                names[key] = self._adapters[service].get_playlist(mapping.playlist_for(service)).name
            except ProviderError as e:
                logger.warning(f"Could not fetch {service} playlist name for mapping {mapping.id}: {e}")

        if not names:
            return mapping
        return Mapping.from_record(self._store.update(MAPPINGS, mapping.id, names))

    def exclude_track(self, mapping_id: str, service: str, track_id: str,
                      reason: str = "manual") -> BlacklistEntry:
        self.get(mapping_id)
        if service not in (SOURCE_SERVICE, DESTINATION_SERVICE):
            raise ValidationError(f"Unknown service: {service}")
        if not track_id:
            raise ValidationError("track_id is required")
        return self._blacklist.record_skip(mapping_id, service, track_id, reason)

    def _active_twin(self, item: SyncItem) -> str | None:
        active = self._store.find(SYNC_ITEMS, {
            "mapping_id": item.mapping_id,
            "service": item.service,
            "action": item.action,
            "status": ACTIVE_STATUSES,
        })
        for record in active:
            if SyncItem.from_record(record).track_id == item.track_id:
                return record["id"]
        return None

    def requeue_errors(self, max_attempts: int, mapping_id: str | None = None) -> int:
        """
        Move errored items that still have attempts left back to pending.

        An errored item whose work was queued again by a later analysis is
        marked skipped instead, so the same track is never active twice.
        """
        where = {"status": ERROR}
        if mapping_id:
            where["mapping_id"] = mapping_id

        requeued = 0
        superseded = 0
        with self._store.transaction():
            for record in self._store.find(SYNC_ITEMS, where):
                item = SyncItem.from_record(record)
                if item.attempts >= max_attempts:
                    continue
                twin = self._active_twin(item)
                if twin is not None:
                    self._store.update(SYNC_ITEMS, item.id, {
                        "status": SKIPPED, "last_error": f"superseded by {twin}",
                    })
                    superseded += 1
                    continue
                self._store.update(SYNC_ITEMS, item.id, {
                    "status": PENDING, "next_attempt_at": to_iso(self._clock()),
                })
                requeued += 1

        if requeued or superseded:
            self._activity.info(f"Requeued {requeued} errored sync items, {superseded} already queued again",
                                "system")
        return requeued
