"""
History retention

Activity logs and settled sync items (done, skipped) older than the retention
window are deleted so the store stops growing with every tick. Completed adds
that carry a resolved destination ID are kept: analysis matches videos
against them.
"""

import logging
from datetime import datetime, timedelta

from spotube.core.models import (
    ACTIVITY_LOGS, ADD_TRACK, DONE, SKIPPED, SYNC_ITEMS, SyncItem, parse_iso,
)
from spotube.core.store import RecordStore

logger = logging.getLogger(__name__)

RETENTION_DAYS = 30


def _older_than(cutoff: datetime, field: str):
    def check(record: dict) -> bool:
        stamp = parse_iso(record.get(field))
        return stamp is not None and stamp < cutoff
    return check


def _disposable(cutoff: datetime):
    old = _older_than(cutoff, "updated")

    def check(record: dict) -> bool:
        if not old(record):
            return False
        item = SyncItem.from_record(record)
        return not (item.action == ADD_TRACK and item.status == DONE and item.data.get("destination_track_id"))
    return check


def prune_history(store: RecordStore, now: datetime, days: int = RETENTION_DAYS) -> dict[str, int]:
    """Delete history older than `days`. Returns the number removed per collection."""
    cutoff = now - timedelta(days=days)
    removed = {
        ACTIVITY_LOGS: store.delete_where(ACTIVITY_LOGS, None, predicate=_older_than(cutoff, "created")),
        SYNC_ITEMS: store.delete_where(SYNC_ITEMS, {"status": (DONE, SKIPPED)}, predicate=_disposable(cutoff)),
    }
    if any(removed.values()):
        logger.info(f"Pruned history older than {days} days: {removed[ACTIVITY_LOGS]} activity logs, "
                    f"{removed[SYNC_ITEMS]} sync items")
    return removed
