"""
Analysis Scheduler

For every mapping that is due, fetch both playlists, diff them and enqueue
sync items for the executor. Mirroring is source-authoritative: Spotify is
the truth, YouTube follows.

- source track with no destination match   -> add_track on the destination
- destination track matched by no source   -> remove_track on the destination
- source name differs from destination name -> rename_playlist on the destination

Blacklisted tracks are never enqueued, and an item is not enqueued twice while
an identical one is pending or running. A mapping's analysis timestamps are
stamped even when it fails, so a broken mapping waits out its interval.
Each tick ends by pruning history older than the retention window.
"""

import json
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Mapping as MappingType

from spotube.clients.base import PlaylistAdapter
from spotube.core.activity import ActivityLogger
from spotube.core.blacklist import BlacklistGate
from spotube.core.cache import SearchCache
from spotube.core.errors import InternalError, SpotubeError
from spotube.core.matching import MatchPolicy
from spotube.core.models import (
    ACTIVE_STATUSES, ADD_TRACK, DESTINATION_SERVICE, DONE, MAPPINGS, PENDING, REMOVE_TRACK,
    RENAME_PLAYLIST, SOURCE_SERVICE, SYNC_ITEMS, AnalysisResult, Mapping, SyncItem, Track,
    to_iso, utcnow,
)
from spotube.core.retention import RETENTION_DAYS, prune_history
from spotube.core.store import RecordStore

logger = logging.getLogger(__name__)

JOB = "analysis"


class AnalysisScheduler:
    def __init__(self, store: RecordStore, adapters: MappingType[str, PlaylistAdapter],
                 blacklist: BlacklistGate, activity: ActivityLogger,
                 cache: SearchCache | None = None, match_mode: str = "title_artist",
                 retention_days: int | None = RETENTION_DAYS, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._adapters = adapters
        self._blacklist = blacklist
        self._activity = activity
        self._cache = cache
        self._match_mode = match_mode
        self._retention_days = retention_days
        self._clock = clock

    def run(self) -> AnalysisResult:
        """One analysis tick over all due mappings."""
        start = time.time()
        result = AnalysisResult()
        self._activity.info("Starting sync analysis job", JOB)

        try:
            mappings = [Mapping.from_record(r) for r in self._store.find(MAPPINGS)]
        except InternalError as e:
            self._activity.error(f"Failed to query mappings: {e}", JOB)
            result.errors.append(str(e))
            return result

        now = self._clock()
        due = [m for m in mappings if m.is_due(now)]
        logger.info(f"{len(due)} of {len(mappings)} mappings due for analysis")

        for mapping in due:
            try:
                result.items_enqueued += self.analyze_mapping(mapping, now)
                result.mappings_analyzed += 1
            except SpotubeError as e:
                message = f"Failed to analyze mapping {mapping.id}: {e}"
                self._activity.error(message, JOB)
                result.errors.append(message)
            except Exception as e:
                logger.exception(f"Unexpected error analyzing mapping {mapping.id}")
                message = f"Failed to analyze mapping {mapping.id}: {e}"
                self._activity.error(message, JOB)
                result.errors.append(message)
            finally:
                self._stamp(mapping, now)

        if self._retention_days:
            try:
                prune_history(self._store, now, self._retention_days)
            except InternalError as e:
                self._activity.error(f"Failed to prune history: {e}", JOB)
                result.errors.append(str(e))

        result.duration = time.time() - start
        self._activity.info(
            f"Analysis job completed. Processed {result.mappings_analyzed} mappings, "
            f"enqueued {result.items_enqueued} sync items", JOB)
        return result

    def analyze_mapping(self, mapping: Mapping, now: datetime) -> int:
        """Diff one mapping and enqueue what is missing. Returns the number of new items."""
        source = self._adapters[SOURCE_SERVICE]
        destination = self._adapters[DESTINATION_SERVICE]
        logger.info(f"Analyzing mapping {mapping.id}")

        source_name = source.get_playlist(mapping.source_playlist_id).name
        destination_name = destination.get_playlist(mapping.destination_playlist_id).name
        self._store.update(MAPPINGS, mapping.id, {
            "source_playlist_name": source_name,
            "destination_playlist_name": destination_name,
        })

        enqueued = 0
        if mapping.sync_tracks:
            source_tracks = list(source.list_tracks(mapping.source_playlist_id))
            destination_tracks = list(destination.list_tracks(mapping.destination_playlist_id))
            logger.info(f"Mapping {mapping.id}: {len(source_tracks)} source tracks, "
                        f"{len(destination_tracks)} destination tracks")
            enqueued += self._analyze_tracks(mapping, source_tracks, destination_tracks, now)

        if mapping.sync_name and source_name and source_name != destination_name:
            payload = {"new_name": source_name}
            if self._enqueue(mapping, RENAME_PLAYLIST, None, payload, now):
                enqueued += 1

        return enqueued

    def _analyze_tracks(self, mapping: Mapping, source_tracks: list[Track],
                        destination_tracks: list[Track], now: datetime) -> int:
        resolved = self._resolved_ids(mapping, source_tracks)
        policy = MatchPolicy(self._match_mode, resolved)
        missing, extra = policy.pair(source_tracks, destination_tracks)
        blocked = self._blacklist.blacklisted_ids(mapping.id, DESTINATION_SERVICE)

        enqueued = filtered = 0
        for track in missing:
            if track.id in blocked:
                filtered += 1
                continue
            payload = {"artist": track.artist}
            if track.id in resolved:
                payload["destination_track_id"] = resolved[track.id]
            if self._enqueue(mapping, ADD_TRACK, track, payload, now):
                enqueued += 1

        for track in extra:
            if track.id in blocked:
                filtered += 1
                continue
            payload = {"video_id": track.id, "item_id": track.item_id}
            if self._enqueue(mapping, REMOVE_TRACK, track, payload, now):
                enqueued += 1

        if filtered:
            logger.info(f"Mapping {mapping.id}: filtered {filtered} blacklisted tracks")
        logger.info(f"Mapping {mapping.id}: {len(missing)} to add, {len(extra)} to remove, "
                    f"{enqueued} newly queued")
        return enqueued

    def _resolved_ids(self, mapping: Mapping, source_tracks: list[Track]) -> dict[str, str]:
        """Source track ID -> destination ID, from completed adds and the search cache."""
        resolved = {}
        if self._cache is not None:
            for track in source_tracks:
                cached = self._cache.get(track.title, track.artist)
                if cached:
                    resolved[track.id] = cached

        done = self._store.find(SYNC_ITEMS, {"mapping_id": mapping.id, "action": ADD_TRACK, "status": DONE})
        for record in done:
            item = SyncItem.from_record(record)
            destination_id = item.data.get("destination_track_id")
            if destination_id:
                resolved[item.source_track_id] = destination_id
        return resolved

    def _enqueue(self, mapping: Mapping, action: str, track: Track | None, payload: dict,
                 now: datetime) -> bool:
        """Insert a pending item unless an identical one is pending or running."""
        track_id = ""
        if track is not None:
            track_id = track.id

        with self._store.transaction():
            active = self._store.find(SYNC_ITEMS, {
                "mapping_id": mapping.id,
                "service": DESTINATION_SERVICE,
                "action": action,
                "status": ACTIVE_STATUSES,
            })
            for record in active:
                if SyncItem.from_record(record).track_id == track_id:
                    logger.debug(f"Skipping duplicate sync item: mapping={mapping.id} action={action} "
                                 f"track={track_id} (existing {record['id']})")
                    return False

            record = self._store.insert(SYNC_ITEMS, {
                "mapping_id": mapping.id,
                "service": DESTINATION_SERVICE,
                "action": action,
                "status": PENDING,
                "source_track_id": track_id,
                "source_track_title": track.title if track else "",
                "source_service": SOURCE_SERVICE,
                "destination_service": DESTINATION_SERVICE,
                "payload": json.dumps(payload),
                "attempts": 0,
                "last_error": "",
                "next_attempt_at": to_iso(now),
            })

        label = track.label if track else payload.get("new_name", "")
        logger.info(f"Queued {action} '{label}' for mapping {mapping.id} ({record['id']})")
        return True

    def _stamp(self, mapping: Mapping, now: datetime) -> None:
        interval = mapping.interval_minutes or 60
        try:
            self._store.update(MAPPINGS, mapping.id, {
                "last_analyzed_at": to_iso(now),
                "next_analysis_at": to_iso(now + timedelta(minutes=interval)),
            })
        except InternalError as e:
            logger.error(f"Failed to update analysis time for mapping {mapping.id}: {e}")
