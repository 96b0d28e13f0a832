"""Pollable per-scope job state.

A tracker is written by exactly one pipeline at a time and read by any
number of pollers. Every mutation happens under the tracker lock, so
``snapshot()`` always returns a coherent state.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from repohub.sync.models import JobStatus, SyncJobState, SyncPhase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressTracker:
    def __init__(self, scope: str, clock: Callable[[], datetime] = _utcnow):
        self.scope = scope
        self._clock = clock
        self._lock = threading.Lock()
        self._run_id: Optional[str] = None
        self._state: dict[str, object] = {
            "status": JobStatus.IDLE,
            "phase": None,
            "fetch_progress": 0,
            "fetch_total": 0,
            "store_progress": 0,
            "store_total": 0,
            "current_item": "",
            "error": None,
            "in_progress": False,
            "started_at": None,
            "finished_at": None,
            "updated_at": None,
        }

    @property
    def run_id(self) -> Optional[str]:
        with self._lock:
            return self._run_id

    def _accepts(self, run_id: Optional[str]) -> bool:
        if run_id is not None and run_id != self._run_id:
            return False
        status = self._state["status"]
        # idle trackers have no run to update; terminal ones are closed
        return status is not JobStatus.IDLE and not status.terminal

    def _touch(self, **changes) -> None:
        self._state.update(changes)
        self._state["updated_at"] = self._clock()

    def reset(self, run_id: str, started_at: Optional[datetime] = None) -> None:
        with self._lock:
            self._run_id = run_id
            self._touch(
                status=JobStatus.RUNNING,
                phase=SyncPhase.FETCH,
                fetch_progress=0,
                fetch_total=0,
                store_progress=0,
                store_total=0,
                current_item="",
                error=None,
                in_progress=True,
                started_at=started_at or self._clock(),
                finished_at=None,
            )

    def enter_phase(self, phase: SyncPhase, total: Optional[int] = None, *, run_id: Optional[str] = None) -> bool:
        with self._lock:
            if not self._accepts(run_id):
                return False
            changes: dict[str, object] = {"phase": phase}
            if phase is SyncPhase.STORE and total is not None:
                changes["store_total"] = max(int(self._state["store_total"]), int(total), 0)
            self._touch(**changes)
            return True

    @staticmethod
    def _advance(prev_current: int, prev_total: int, current: int, total: int) -> tuple[int, int]:
        new_total = max(prev_total, int(total or 0))
        new_current = max(prev_current, int(current or 0))
        if new_total > 0:
            new_current = min(new_current, new_total)
        return new_current, new_total

    def report_fetch_progress(
        self,
        current: int,
        total: int,
        item_label: str = "",
        *,
        run_id: Optional[str] = None,
    ) -> bool:
        with self._lock:
            if not self._accepts(run_id):
                return False
            cur, tot = self._advance(
                int(self._state["fetch_progress"]), int(self._state["fetch_total"]), current, total
            )
            self._touch(fetch_progress=cur, fetch_total=tot, current_item=item_label or "")
            return True

    def report_store_progress(self, current: int, total: int, *, run_id: Optional[str] = None) -> bool:
        with self._lock:
            if not self._accepts(run_id):
                return False
            cur, tot = self._advance(
                int(self._state["store_progress"]), int(self._state["store_total"]), current, total
            )
            self._touch(store_progress=cur, store_total=tot)
            return True

    def complete(self, *, run_id: Optional[str] = None) -> bool:
        with self._lock:
            if not self._accepts(run_id):
                return False
            self._touch(status=JobStatus.COMPLETE, current_item="", finished_at=self._clock())
            return True

    def fail(self, message: str, *, run_id: Optional[str] = None) -> bool:
        with self._lock:
            if not self._accepts(run_id):
                return False
            # phase is kept so pollers can tell which step failed
            self._touch(status=JobStatus.ERROR, error=message or "Unknown error", finished_at=self._clock())
            return True

    def release(self, run_id: str) -> bool:
        with self._lock:
            if run_id != self._run_id:
                return False
            self._touch(in_progress=False)
            return True

    def snapshot(self) -> SyncJobState:
        with self._lock:
            return SyncJobState(scope=self.scope, **self._state)
