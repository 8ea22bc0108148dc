"""
Executor Scheduler

Drains a bounded batch of pending sync items, oldest first, and applies each
one through the adapter of its service. An item is claimed with a
conditional pending -> running transition, so overlapping workers never
process the same item twice.

Outcomes:
- success                     -> done
- transient (rate limit, ...)  -> pending with exponential backoff, or error
                                 once attempts reach the ceiling
- permanent (not found, ...)  -> skipped, track blacklisted
- auth                        -> error; the provider is left alone for the rest of the tick
- daily quota spent           -> pending until the quota resets, no attempt used
- still running past its lease -> pending again (the worker died mid-item)

Renames run before track changes within a batch.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Mapping as MappingType

from spotube.clients.base import PlaylistAdapter
from spotube.core.activity import ActivityLogger
from spotube.core.blacklist import BlacklistGate
from spotube.core.cache import SearchCache
from spotube.core.errors import (
    AuthError, InternalError, PermanentProviderError, QuotaExceeded, RateLimited,
    TrackNotFound, TransientProviderError,
)
from spotube.core.models import (
    ADD_TRACK, DONE, ERROR, MAPPINGS, PENDING, REMOVE_TRACK, RENAME_PLAYLIST, RUNNING, SKIPPED,
    SYNC_ITEMS, ExecutionResult, Mapping, SyncItem, TrackRef, parse_iso, to_iso, utcnow,
)
from spotube.core.store import RecordStore

logger = logging.getLogger(__name__)

JOB = "execution"
BASE_BACKOFF_SECONDS = 30
MAX_BACKOFF_SECONDS = 3600
LEASE_SECONDS = 600
TRACK_ACTIONS = (ADD_TRACK, REMOVE_TRACK)


def backoff_seconds(attempts: int) -> int:
    return min(2 ** attempts * BASE_BACKOFF_SECONDS, MAX_BACKOFF_SECONDS)


def truncate_error(message: str, max_len: int = 500) -> str:
    if len(message) <= max_len:
        return message
    return message[:max_len - 3] + "..."


class ExecutorScheduler:
    def __init__(self, store: RecordStore, adapters: MappingType[str, PlaylistAdapter],
                 blacklist: BlacklistGate, activity: ActivityLogger,
                 cache: SearchCache | None = None, batch_size: int = 50, max_attempts: int = 5,
                 concurrency: int = 1, lease_seconds: float = LEASE_SECONDS,
                 clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._adapters = adapters
        self._blacklist = blacklist
        self._activity = activity
        self._cache = cache
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._concurrency = max(1, concurrency)
        self._lease_seconds = lease_seconds
        self._clock = clock
        self._result_lock = threading.Lock()

    def run(self) -> ExecutionResult:
        """One executor tick."""
        start = time.time()
        result = ExecutionResult()

        try:
            now = self._clock()
            self.recover_stale(now)
            batch = self.next_batch(now)
        except InternalError as e:
            self._activity.error(f"Failed to query pending sync items: {e}", JOB)
            result.errors.append(str(e))
            return result

        if not batch:
            logger.info("No pending sync items found")
            return result

        self._activity.info(f"Starting sync executor job with {len(batch)} items", JOB)
        halted: set[str] = set()
        renames = [item for item in batch if item.action == RENAME_PLAYLIST]
        changes = [item for item in batch if item.action != RENAME_PLAYLIST]

        for group in (renames, changes):
            if self._concurrency == 1 or len(group) < 2:
                for item in group:
                    self.process(item, halted, result)
            else:
                with ThreadPoolExecutor(max_workers=self._concurrency) as pool:
                    list(pool.map(lambda item: self.process(item, halted, result), group))

        if self._cache is not None:
            self._cache.save()

        result.duration = time.time() - start
        self._activity.info(
            f"Executor job completed. Processed {result.processed} items: {result.done} done, "
            f"{result.retried} retrying, {result.skipped} skipped, {result.errored} errors, "
            f"{result.deferred} deferred", JOB)
        return result

    def recover_stale(self, now: datetime) -> int:
        """Return items stuck in running past their lease to pending. Returns how many."""
        cutoff = now - timedelta(seconds=self._lease_seconds)

        def stale(record: dict) -> bool:
            claimed = parse_iso(record.get("claimed_at"))
            return claimed is None or claimed <= cutoff

        recovered = 0
        for record in self._store.find(SYNC_ITEMS, {"status": RUNNING}, predicate=stale):
            if self._store.compare_and_update(
                SYNC_ITEMS, record["id"],
                {"status": RUNNING, "claimed_at": record.get("claimed_at")},
                {"status": PENDING, "next_attempt_at": to_iso(now),
                 "last_error": "interrupted: lease expired while running"},
            ):
                recovered += 1
        if recovered:
            self._activity.warn(f"Recovered {recovered} sync items left running past their lease", JOB)
        return recovered

    def next_batch(self, now: datetime) -> list[SyncItem]:
        """Oldest pending items whose backoff has passed."""
        def ready(record: dict) -> bool:
            next_attempt = parse_iso(record.get("next_attempt_at"))
            return next_attempt is None or next_attempt <= now

        records = self._store.find(SYNC_ITEMS, {"status": PENDING}, predicate=ready,
                                   order_by="created", limit=self._batch_size)
        return [SyncItem.from_record(r) for r in records]

    def claim(self, item_id: str) -> bool:
        """Atomically move an item from pending to running. False if someone else got it."""
        return self._store.compare_and_update(SYNC_ITEMS, item_id, {"status": PENDING}, {
            "status": RUNNING, "claimed_at": to_iso(self._clock()),
        })

    def _count(self, result: ExecutionResult, field: str) -> None:
        with self._result_lock:
            setattr(result, field, getattr(result, field) + 1)

    def _store_failure(self, item: SyncItem, error: InternalError, result: ExecutionResult) -> None:
        self._activity.error(f"Record store failure on {item.action}: {error}", JOB, item.id)
        with self._result_lock:
            result.errors.append(str(error))

    def process(self, item: SyncItem, halted: set[str], result: ExecutionResult) -> None:
        """Claim and run one item. A record store failure aborts this item only."""
        if item.service in halted:
            self._count(result, "deferred")
            return
        try:
            if not self.claim(item.id):
                logger.info(f"Sync item {item.id} already claimed, skipping")
                return
        except InternalError as e:
            self._store_failure(item, e, result)
            return

        self._count(result, "processed")
        logger.info(f"Processing sync item {item.id}: service={item.service}, action={item.action}")

        try:
            self._run_claimed(item, halted, result)
        except InternalError as e:
            self._store_failure(item, e, result)
            self._release(item, e)

    def _run_claimed(self, item: SyncItem, halted: set[str], result: ExecutionResult) -> None:
        try:
            record = self._store.get(MAPPINGS, item.mapping_id)
            if record is None:
                self._finish(item, SKIPPED, "mapping_deleted", attempts=item.attempts)
                self._count(result, "skipped")
                return
            self._execute(item, Mapping.from_record(record))

        except QuotaExceeded as e:
            halted.add(item.service)
            self._defer(item, e)
            self._count(result, "deferred")
        except TransientProviderError as e:
            self._retry_or_fail(item, e, result)
        except AuthError as e:
            halted.add(item.service)
            self._finish(item, ERROR, f"auth: {e}", attempts=item.attempts)
            self._activity.error(f"Authentication failed for {item.service}, halting its items this tick: {e}",
                                 JOB, item.id)
            self._count(result, "errored")
        except PermanentProviderError as e:
            self._skip(item, e)
            self._count(result, "skipped")
        except InternalError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error processing sync item {item.id}")
            self._retry_or_fail(item, e, result)
        else:
            self._finish(item, DONE, "", attempts=item.attempts + 1)
            self._activity.info(f"Completed {item.action} {self._label(item)} on {item.service}", JOB, item.id)
            self._count(result, "done")

    def _execute(self, item: SyncItem, mapping: Mapping) -> None:
        adapter = self._adapters[item.service]
        playlist_id = mapping.playlist_for(item.service)
        data = item.data

        if item.action == ADD_TRACK:
            destination_id = data.get("destination_track_id") or self._search(item, adapter, data)
            adapter.add_track(playlist_id, TrackRef(destination_id))
        elif item.action == REMOVE_TRACK:
            adapter.remove_track(playlist_id, TrackRef(data.get("video_id") or item.source_track_id,
                                                       data.get("item_id", "")))
        elif item.action == RENAME_PLAYLIST:
            new_name = data.get("new_name", "")
            if not new_name:
                raise PermanentProviderError("new_name missing from payload", service=item.service)
            adapter.rename_playlist(playlist_id, new_name)
            key = "source_playlist_name" if playlist_id == mapping.source_playlist_id \
                else "destination_playlist_name"
            self._store.update(MAPPINGS, mapping.id, {key: new_name})
        else:
            raise PermanentProviderError(f"Unsupported action: {item.service}:{item.action}",
                                         service=item.service)

    def _search(self, item: SyncItem, adapter: PlaylistAdapter, data: dict) -> str:
        """Resolve the destination ID of a source track and remember it on the item."""
        title = item.source_track_title
        artist = data.get("artist", "")
        if not title:
            raise TrackNotFound("source_track_title is empty", service=item.service)

        destination_id = self._cache.get(title, artist) if self._cache is not None else None
        if not destination_id:
            logger.info(f"Searching for '{title}' by '{artist}' on {item.service}")
            destination_id = adapter.search_track(title, artist)
        if not destination_id:
            raise TrackNotFound(f"No match on {item.service} for '{title}' by '{artist}'", service=item.service)

        if self._cache is not None:
            self._cache.set(title, artist, destination_id)
        self._store.update(SYNC_ITEMS, item.id, {
            "payload": json.dumps({**data, "destination_track_id": destination_id}),
        })
        return destination_id

    def _finish(self, item: SyncItem, status: str, last_error: str, attempts: int,
                next_attempt_at: datetime | None = None) -> None:
        changes = {"status": status, "last_error": truncate_error(last_error), "attempts": attempts}
        if next_attempt_at is not None:
            changes["next_attempt_at"] = to_iso(next_attempt_at)
        self._store.update(SYNC_ITEMS, item.id, changes)

    def _retry_or_fail(self, item: SyncItem, error: Exception, result: ExecutionResult) -> None:
        attempts = item.attempts + 1
        reason = "rate_limit" if isinstance(error, RateLimited) else "temporary"

        if attempts < self._max_attempts:
            delay = backoff_seconds(attempts)
            retry_after = getattr(error, "retry_after", None)
            if retry_after:
                delay = max(delay, retry_after)
            self._finish(item, PENDING, f"{reason}: {error}", attempts,
                         next_attempt_at=self._clock() + timedelta(seconds=delay))
            self._activity.warn(f"{item.action} {self._label(item)} failed ({reason}), "
                                f"retry {attempts}/{self._max_attempts} in {delay}s: {error}", JOB, item.id)
            self._count(result, "retried")
            return

        self._finish(item, ERROR, f"{reason}: {error}", attempts)
        if item.action in TRACK_ACTIONS:
            self._blacklist.record_skip(item.mapping_id, item.service, item.track_id, "retries_exhausted")
        self._activity.error(f"{item.action} {self._label(item)} failed after {attempts} attempts: {error}",
                             JOB, item.id)
        self._count(result, "errored")

    def _skip(self, item: SyncItem, error: PermanentProviderError) -> None:
        self._finish(item, SKIPPED, f"{error.reason}: {error}", item.attempts + 1)
        if item.action in TRACK_ACTIONS and item.track_id:
            self._blacklist.record_skip(item.mapping_id, item.service, item.track_id, error.reason)
        self._activity.warn(f"Skipped {item.action} {self._label(item)}: {error}", JOB, item.id)

    def _defer(self, item: SyncItem, error: QuotaExceeded) -> None:
        delay = error.retry_after or MAX_BACKOFF_SECONDS
        self._finish(item, PENDING, f"quota: {error}", item.attempts,
                     next_attempt_at=self._clock() + timedelta(seconds=delay))
        self._activity.warn(f"{item.service} quota exhausted, {item.action} deferred {delay}s", JOB, item.id)

    def _release(self, item: SyncItem, error: Exception) -> None:
        try:
            self._finish(item, PENDING, f"internal: {error}", item.attempts)
        except InternalError:
            logger.error(f"Sync item {item.id} left running: {error}")

    def _label(self, item: SyncItem) -> str:
        if item.action == RENAME_PLAYLIST:
            return f"to '{item.data.get('new_name', '')}'"
        return f"'{item.source_track_title or item.track_id}'"
