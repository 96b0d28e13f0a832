from __future__ import annotations

import asyncio
import logging
import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from repohub.core.errors import AuthDenied, ConfigurationError, SyncAlreadyRunning
from repohub.sync.models import AutoSyncReport, AutoSyncStatus, RunOutcome, SweepSummary
from repohub.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger("scheduler")

# Returned by next_due() when a sweep is due right away.
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
SWEEP_LOCK_NAME = "auto-sync"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutoScheduler:
    """Decides when an unattended sweep over every scope is due and runs it.

    A sweep runs the scopes one after another in the calling thread. A failed
    scope does not stop the sweep, and the last-sync timestamp moves forward
    even when some scopes failed.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval_days: int,
        *,
        clock: Callable[[], datetime] = _utcnow,
        order: Optional[Sequence[str]] = None,
    ):
        if interval_days < 0:
            raise ConfigurationError(f"auto sync interval must be >= 0 days, got {interval_days}")
        self.orchestrator = orchestrator
        self.interval_days = int(interval_days)
        self.order = list(order) if order is not None else [s.key for s in orchestrator.scopes]
        self._clock = clock
        self._state_lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self._last_auto_sync: Optional[datetime] = None

    @property
    def last_auto_sync(self) -> Optional[datetime]:
        with self._state_lock:
            return self._last_auto_sync

    @property
    def sweeping(self) -> bool:
        return self._sweep_lock.locked()

    def is_enabled(self) -> bool:
        return self.interval_days > 0

    def next_due(self, last_sync: Optional[datetime]) -> datetime:
        if not self.is_enabled() or last_sync is None:
            return EPOCH
        return last_sync + timedelta(days=self.interval_days)

    def status(self) -> AutoSyncStatus:
        now = self._clock()
        last = self.last_auto_sync
        enabled = self.is_enabled()
        next_sync = self.next_due(last) if enabled and last is not None else None
        if self.sweeping:
            state = "running"
        elif next_sync is not None and now < next_sync:
            state = "waiting"
        else:
            state = "ready"
        return AutoSyncStatus(
            enabled=enabled,
            interval_days=self.interval_days,
            last_sync=last,
            next_sync=next_sync,
            status=state,
        )

    def maybe_run_all(self, presented_secret: Optional[str] = None) -> AutoSyncReport:
        decision = self.orchestrator.auth.is_sync_allowed(presented_secret)
        if not decision.allowed:
            logger.warning("auto_sync_denied reason=%s", decision.reason)
            raise AuthDenied(decision.reason)
        return self.run_if_due()

    def run_if_due(self, force: bool = False) -> AutoSyncReport:
        if not self.is_enabled() and not force:
            return AutoSyncReport(message="Auto sync is disabled")

        now = self._clock()
        last = self.last_auto_sync
        due_at = self.next_due(last)
        if not force and now < due_at:
            return AutoSyncReport(
                message="Auto sync not due yet",
                last_sync=last,
                next_sync=due_at,
                hours_until_next=math.ceil((due_at - now).total_seconds() / 3600),
            )
        return self._sweep(now)

    def _sweep(self, now: datetime) -> AutoSyncReport:
        if not self._sweep_lock.acquire(blocking=False):
            raise SyncAlreadyRunning(SWEEP_LOCK_NAME)
        try:
            logger.info("auto_sync_started scopes=%s", ",".join(self.order))
            results = [self._run_scope(key) for key in self.order]
            with self._state_lock:
                self._last_auto_sync = now
        finally:
            self._sweep_lock.release()

        successful = sum(1 for r in results if r.status == "success")
        logger.info("auto_sync_completed successful=%s total=%s", successful, len(results))
        return AutoSyncReport(
            message="Auto sync completed",
            ran=True,
            timestamp=now,
            last_sync=now,
            next_sync=self.next_due(now) if self.is_enabled() else None,
            results=results,
            summary=SweepSummary(
                total_platforms=len(results),
                successful=successful,
                failed=len(results) - successful,
            ),
        )

    def _run_scope(self, key: str) -> RunOutcome:
        try:
            return self.orchestrator.run_now(key, run_type="scheduled")
        except SyncAlreadyRunning:
            logger.warning("auto_sync_scope_skipped scope=%s sync_busy", key)
            return RunOutcome(platform=key, status="skipped", error="Sync already in progress")
        except Exception as e:
            logger.exception("auto_sync_scope_failed scope=%s", key)
            return RunOutcome(platform=key, status="failed", error=str(e) or type(e).__name__)


async def _wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


class SchedulerLoop:
    """In-process replacement for an external cron hitting POST /auto-sync."""

    def __init__(self, scheduler: AutoScheduler, check_interval_sec: int):
        self.scheduler = scheduler
        self.check_interval_sec = int(check_interval_sec)
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.check_interval_sec <= 0 or self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event), name="repohub_auto_sync")

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except Exception:
                logger.exception("scheduler_stop_error")
        self._task = None
        self._stop_event = None

    async def _run(self, stop_event: asyncio.Event) -> None:
        logger.info("scheduler_started check_interval_sec=%s", self.check_interval_sec)
        try:
            while not stop_event.is_set():
                if self.scheduler.is_enabled():
                    try:
                        report = await asyncio.to_thread(self.scheduler.run_if_due)
                        if report.ran and report.summary is not None:
                            logger.info(
                                "scheduled_sweep_completed successful=%s failed=%s",
                                report.summary.successful,
                                report.summary.failed,
                            )
                    except SyncAlreadyRunning:
                        logger.warning("scheduled_sweep_skipped sync_busy")
                    except Exception as e:
                        logger.exception("scheduled_sweep_failed: %s", e)
                await _wait_stop_or_timeout(stop_event, self.check_interval_sec)
        finally:
            logger.info("scheduler_stopped")
