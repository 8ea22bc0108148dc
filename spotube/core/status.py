"""Status file writer for Home Assistant integration"""

import json
import logging
import os
import tempfile
from pathlib import Path

from spotube.core.activity import ActivityLogger
from spotube.core.models import MAPPINGS, STATUSES, SYNC_ITEMS, to_iso, utcnow
from spotube.core.quota import QuotaTracker
from spotube.core.store import RecordStore

logger = logging.getLogger(__name__)

RUN_MARKERS = ("job completed", "Starting sync")


def collect_status(store: RecordStore, activity: ActivityLogger, quota: QuotaTracker | None = None,
                   recent_runs: int = 10) -> dict:
    queue = {status: store.count(SYNC_ITEMS, {"status": status}) for status in STATUSES}
    runs = [
        {"job_type": log.job_type, "level": log.level, "message": log.message, "created": log.created}
        for log in activity.recent(limit=200)
        if log.job_type in ("analysis", "execution") and any(m in log.message for m in RUN_MARKERS)
    ][:recent_runs]
    errors = [log for log in activity.recent(limit=50) if log.level == "error"]

    data = {
        "status": "failed" if queue["error"] else "success",
        "last_sync_time": to_iso(utcnow()),
        "mappings_total": store.count(MAPPINGS),
        "queue": queue,
        "recent_runs": runs,
        "last_error": errors[0].message if errors else None,
    }
    if quota is not None:
        data["youtube_quota"] = {"used": quota.used, "limit": quota.limit}
    return data


def write_status(store: RecordStore, activity: ActivityLogger, status_file: Path,
                 quota: QuotaTracker | None = None) -> bool:
    return _atomic_write(status_file, collect_status(store, activity, quota))


def _atomic_write(path: Path, data: dict) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".status_", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(temp_path, path)
            return True
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
    except OSError as e:
        logger.warning(f"Failed to write status file {path}: {e}")
        return False
