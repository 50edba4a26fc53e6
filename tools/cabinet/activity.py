"""Activity log – bracket long-running work with start/finish records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .db import Database

logger = logging.getLogger("cabinet.activity")


@dataclass
class ActivityStart:
    id: int
    start_time: datetime


class ActivityLog:
    def __init__(self, db: Database) -> None:
        self.db = db

    def start_activity(self, activity_type: str) -> ActivityStart:
        start_time = datetime.now(timezone.utc)
        activity_id = self.db.insert_activity(activity_type, start_time)
        logger.info("Started activity: %s (ID: %d)", activity_type, activity_id)
        return ActivityStart(activity_id, start_time)

    def finish_activity(
        self,
        activity_id: int,
        *,
        is_success: bool,
        error_message: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> None:
        self.db.finish_activity(
            activity_id,
            end_time=datetime.now(timezone.utc),
            is_success=is_success,
            error_message=error_message,
            result=result,
        )
        logger.info(
            "Finished activity %d - %s", activity_id, "Success" if is_success else "Failed"
        )

    def recent_crawls(self, limit: int = 10) -> list[dict]:
        return self.db.recent_activities("crawling", limit=limit)

    def crawling_statistics(self) -> dict[str, float]:
        """Per-run averages over the last 30 successful crawls."""
        logs = self.db.recent_activities("crawling", limit=30, successful_only=True)
        totals = {"threads": 0, "posts": 0, "attachments": 0}
        for log in logs:
            result = log.get("result") or {}
            totals["threads"] += result.get("threads_created", 0)
            totals["posts"] += result.get("posts_created", 0)
            totals["attachments"] += result.get("attachments_created", 0)
        runs = len(logs)
        return {
            "avg_threads_per_run": totals["threads"] / runs if runs else 0,
            "avg_posts_per_run": totals["posts"] / runs if runs else 0,
            "avg_attachments_per_run": totals["attachments"] / runs if runs else 0,
            "total_logs": runs,
        }
