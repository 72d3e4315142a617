from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from common.utils import now_utc_iso
from fastapi.concurrency import run_in_threadpool

from jobboard.aggregator import (
    DEFAULT_MAX_AGE_DAYS,
    DEFAULT_RETENTION_DAYS,
    JobAggregator,
    perform_full_cleanup,
)
from jobboard.models import RefreshOutcome, RefreshStats, RunTrigger

LOGGER = logging.getLogger("jobharbor.refresh")

DEFAULT_REFRESH_TIME = "02:00"


class RefreshInProgressError(RuntimeError):
    pass


def parse_refresh_time(value: str) -> tuple[int, int]:
    try:
        hour_text, minute_text = value.strip().split(":")
        hour, minute = int(hour_text), int(minute_text)
    except ValueError as exc:
        raise ValueError(f"Refresh time must look like HH:MM, got {value!r}.") from exc
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Refresh time out of range: {value!r}.")
    return hour, minute


def next_run_after(now: datetime, hour: int, minute: int) -> datetime:
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _utc_now() -> datetime:
    return datetime.now(UTC)


class DailyRefreshService:
    """Runs aggregation plus cleanup once a day and on demand, never twice at once."""

    def __init__(
        self,
        aggregator: JobAggregator,
        *,
        enabled: bool,
        refresh_time: str = DEFAULT_REFRESH_TIME,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.aggregator = aggregator
        self.enabled = enabled
        self.refresh_time = refresh_time
        self.hour, self.minute = parse_refresh_time(refresh_time)
        self.max_age_days = max_age_days
        self.retention_days = retention_days
        self._clock = clock
        self._lock = threading.Lock()
        self.is_running = False
        self.last_result: RefreshOutcome | None = None

    @property
    def schedule(self) -> str:
        return f"daily at {self.hour:02d}:{self.minute:02d} UTC"

    def next_scheduled_run(self) -> datetime | None:
        if not self.enabled:
            return None
        return next_run_after(self._clock(), self.hour, self.minute)

    def stats(self) -> RefreshStats:
        next_run = self.next_scheduled_run()
        return RefreshStats(
            enabled=self.enabled,
            schedule=self.schedule,
            is_running=self.is_running,
            last_refresh=self.last_result.finished_at if self.last_result else None,
            last_result=self.last_result,
            next_scheduled_run=next_run.isoformat() if next_run else None,
        )

    def claim(self) -> str:
        with self._lock:
            if self.is_running:
                raise RefreshInProgressError("A job refresh is already running.")
            self.is_running = True
        return now_utc_iso()

    def execute_claimed(self, trigger: RunTrigger, started_at: str) -> RefreshOutcome:
        errors: list[str] = []
        aggregation = None
        cleanup = None
        try:
            try:
                aggregation = self.aggregator.aggregate(trigger=trigger, respect_backoff=True)
            except Exception as exc:
                errors.append(f"aggregation: {exc}")
                LOGGER.exception(json.dumps({"event": "refresh_aggregation_failed", "error": str(exc)}))
            try:
                cleanup = perform_full_cleanup(
                    self.aggregator.repository,
                    max_age_days=self.max_age_days,
                    retention_days=self.retention_days,
                    trigger=trigger,
                )
            except Exception as exc:
                errors.append(f"cleanup: {exc}")
                LOGGER.exception(json.dumps({"event": "refresh_cleanup_failed", "error": str(exc)}))
            outcome = RefreshOutcome(
                trigger=trigger,
                started_at=started_at,
                finished_at=now_utc_iso(),
                aggregation=aggregation,
                cleanup=cleanup,
                error="; ".join(errors) or None,
            )
            self.last_result = outcome
        finally:
            with self._lock:
                self.is_running = False

        LOGGER.info(
            json.dumps(
                {
                    "event": "refresh_complete",
                    "trigger": trigger,
                    "started_at": started_at,
                    "finished_at": outcome.finished_at,
                    "inserted": aggregation.total_inserted if aggregation else 0,
                    "updated": aggregation.total_updated if aggregation else 0,
                    "deactivated": cleanup.deactivated if cleanup else 0,
                    "deleted": cleanup.deleted if cleanup else 0,
                    "error": outcome.error,
                }
            )
        )
        return outcome

    def run_refresh(self, trigger: RunTrigger = "manual") -> RefreshOutcome:
        started_at = self.claim()
        return self.execute_claimed(trigger, started_at)

    async def run_forever(self) -> None:
        while True:
            next_run = next_run_after(self._clock(), self.hour, self.minute)
            delay = (next_run - self._clock()).total_seconds()
            await asyncio.sleep(max(delay, 0.0))
            try:
                await run_in_threadpool(self.run_refresh, "scheduled")
            except RefreshInProgressError:
                LOGGER.info(json.dumps({"event": "refresh_skipped", "reason": "already running"}))
