"""Append-only activity log shared by both schedulers."""

import logging

from spotube.core.errors import InternalError
from spotube.core.models import ACTIVITY_LOGS, ActivityLog
from spotube.core.store import RecordStore

logger = logging.getLogger(__name__)

LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}
JOB_TYPES = ("analysis", "execution", "system")


class ActivityLogger:
    def __init__(self, store: RecordStore):
        self._store = store

    def record(self, level: str, message: str, job_type: str, sync_item_id: str = "") -> None:
        """Log to the console and persist. Persistence failures are logged, never raised."""
        prefix = f"[{level}] [{job_type}]"
        if sync_item_id:
            prefix += f" [sync_item:{sync_item_id}]"
        logger.log(LEVELS.get(level, logging.INFO), f"ACTIVITY {prefix} {message}")

        try:
            self._store.insert(ACTIVITY_LOGS, {
                "level": level,
                "message": message,
                "job_type": job_type,
                "sync_item_id": sync_item_id,
            })
        except InternalError as e:
            logger.error(f"Failed to save activity log record: {e}")

    def info(self, message: str, job_type: str, sync_item_id: str = "") -> None:
        self.record("info", message, job_type, sync_item_id)

    def warn(self, message: str, job_type: str, sync_item_id: str = "") -> None:
        self.record("warn", message, job_type, sync_item_id)

    def error(self, message: str, job_type: str, sync_item_id: str = "") -> None:
        self.record("error", message, job_type, sync_item_id)

    def recent(self, limit: int = 50, job_type: str | None = None) -> list[ActivityLog]:
        where = {"job_type": job_type} if job_type else None
        records = self._store.find(ACTIVITY_LOGS, where, descending=True, limit=limit)
        return [ActivityLog.from_record(r) for r in records]
