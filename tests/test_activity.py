import logging

from spotube.core.activity import ActivityLogger
from spotube.core.errors import InternalError
from spotube.core.models import ACTIVITY_LOGS


class TestActivityLogger:
    def test_persists_and_mirrors(self, activity, store, caplog):
        with caplog.at_level(logging.INFO, logger="spotube.core.activity"):
            activity.warn("Slow down", "execution", "item1")

        records = store.find(ACTIVITY_LOGS)
        assert records[0]["level"] == "warn"
        assert records[0]["job_type"] == "execution"
        assert records[0]["sync_item_id"] == "item1"
        assert "ACTIVITY [warn] [execution] [sync_item:item1] Slow down" in caplog.text

    def test_recent_newest_first(self, activity):
        for i in range(5):
            activity.info(f"message {i}", "analysis")
        activity.error("other", "execution")

        recent = activity.recent(limit=3, job_type="analysis")
        assert [log.message for log in recent] == ["message 4", "message 3", "message 2"]

    def test_store_failure_is_not_raised(self, caplog):
        class BrokenStore:
            def insert(self, collection, record):
                raise InternalError("disk full")

        logger = ActivityLogger(BrokenStore())
        with caplog.at_level(logging.ERROR, logger="spotube.core.activity"):
            logger.error("something broke", "system")

        assert "Failed to save activity log record: disk full" in caplog.text
