from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional, Protocol, Sequence

from repohub.core.errors import (
    AuthDenied,
    RepoHubError,
    RunSuperseded,
    StoreError,
    SyncAlreadyRunning,
    UnknownScopeError,
    UpstreamFetchError,
)
from repohub.providers.base import Fetcher
from repohub.sync.auth import AuthGate
from repohub.sync.models import PackageRecord, RunOutcome, SyncJobState, SyncPhase
from repohub.sync.progress import ProgressTracker
from repohub.sync.pruning import PrunableStore, PruneResult, PruningPolicy
from repohub.sync.scopes import SCOPES, SyncScope, get_scope

logger = logging.getLogger("sync")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PackageStore(PrunableStore, Protocol):
    def upsert_packages(
        self,
        records: Sequence[PackageRecord],
        seen_at: datetime,
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> int: ...

    def record_run(
        self,
        scope: str,
        run_type: str,
        status: str,
        started_at: datetime,
        finished_at: datetime,
        summary: dict,
    ) -> int: ...


class _JobSlot:
    """Single-flight guard plus tracker for one scope."""

    def __init__(self, scope: SyncScope, clock: Callable[[], datetime]):
        self.scope = scope
        self.tracker = ProgressTracker(scope.key, clock=clock)
        self.thread: Optional[threading.Thread] = None
        self._guard = threading.Lock()
        self._run_id: Optional[str] = None
        self._started_at: Optional[datetime] = None

    @property
    def busy(self) -> bool:
        with self._guard:
            return self._run_id is not None

    def try_acquire(self, now: datetime, max_run: Optional[timedelta]) -> Optional[str]:
        with self._guard:
            if self._run_id is not None:
                age = now - self._started_at if self._started_at else timedelta(0)
                if max_run is None or age <= max_run:
                    return None
                logger.warning(
                    "sync_run_abandoned scope=%s run_id=%s age_sec=%d",
                    self.scope.key,
                    self._run_id,
                    int(age.total_seconds()),
                )
                self.tracker.fail("Run abandoned after exceeding the maximum run time", run_id=self._run_id)

            run_id = uuid.uuid4().hex
            self._run_id = run_id
            self._started_at = now
            self.tracker.reset(run_id, now)
            return run_id

    def owns(self, run_id: str) -> bool:
        with self._guard:
            return self._run_id == run_id

    def ensure_owner(self, run_id: str) -> None:
        if not self.owns(run_id):
            raise RunSuperseded(self.scope.key, run_id)

    def release(self, run_id: str) -> bool:
        with self._guard:
            if self._run_id != run_id:
                # slot was taken over by the watchdog; the new run owns it now
                return False
            self._run_id = None
            self._started_at = None
            self.tracker.release(run_id)
            return True


class SyncOrchestrator:
    """Runs fetch -> store -> prune for a scope, at most one run per scope.

    ``trigger_sync`` starts the pipeline on a daemon thread and returns the
    freshly reset job state at once; ``run_now`` runs it in the calling
    thread. Pipeline failures never propagate to the caller, they end up on
    the scope's tracker and in the run history.
    """

    def __init__(
        self,
        store: PackageStore,
        fetchers: Mapping[str, Fetcher],
        *,
        auth: AuthGate,
        pruning: PruningPolicy,
        clock: Callable[[], datetime] = _utcnow,
        max_run_minutes: int = 0,
        scopes: Sequence[SyncScope] = SCOPES,
    ):
        self.store = store
        self.fetchers = dict(fetchers)
        self.auth = auth
        self.pruning = pruning
        self._clock = clock
        self._max_run = timedelta(minutes=max_run_minutes) if max_run_minutes > 0 else None
        self._slots: dict[str, _JobSlot] = {s.key: _JobSlot(s, clock) for s in scopes}

    @property
    def scopes(self) -> list[SyncScope]:
        return [slot.scope for slot in self._slots.values()]

    def _slot(self, key: str) -> _JobSlot:
        scope = get_scope(key)
        slot = self._slots.get(scope.key)
        if slot is None:
            raise UnknownScopeError(key)
        return slot

    def get_status(self, key: str) -> SyncJobState:
        return self._slot(key).tracker.snapshot()

    def statuses(self) -> dict[str, SyncJobState]:
        return {k: slot.tracker.snapshot() for k, slot in self._slots.items()}

    def is_running(self, key: str) -> bool:
        return self._slot(key).busy

    def _acquire(self, slot: _JobSlot) -> str:
        run_id = slot.try_acquire(self._clock(), self._max_run)
        if run_id is None:
            logger.warning("sync_rejected_busy scope=%s", slot.scope.key)
            raise SyncAlreadyRunning(slot.scope.key)
        return run_id

    def trigger_sync(self, key: str, presented_secret: Optional[str] = None) -> SyncJobState:
        slot = self._slot(key)
        decision = self.auth.is_sync_allowed(presented_secret)
        if not decision.allowed:
            logger.warning("sync_denied scope=%s reason=%s", slot.scope.key, decision.reason)
            raise AuthDenied(decision.reason)

        run_id = self._acquire(slot)
        snapshot = slot.tracker.snapshot()
        thread = threading.Thread(
            target=self._run_guarded,
            args=(slot, run_id, "manual_web"),
            name=f"sync-{slot.scope.key}",
            daemon=True,
        )
        slot.thread = thread
        try:
            thread.start()
        except RuntimeError as e:
            slot.tracker.fail(f"Could not start sync worker: {e}", run_id=run_id)
            slot.release(run_id)
            raise
        return snapshot

    def run_now(self, key: str, run_type: str = "manual_cli") -> RunOutcome:
        slot = self._slot(key)
        run_id = self._acquire(slot)
        return self._run_guarded(slot, run_id, run_type)

    def wait(self, key: str, timeout: Optional[float] = None) -> bool:
        """Join the background run of a scope; True once nothing is running."""
        thread = self._slot(key).thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return True

    def _run_guarded(self, slot: _JobSlot, run_id: str, run_type: str) -> RunOutcome:
        try:
            return self._run_pipeline(slot, run_id, run_type)
        finally:
            # no-op when the pipeline already reached a terminal state
            slot.tracker.fail("Sync run aborted", run_id=run_id)
            slot.release(run_id)

    def _run_pipeline(self, slot: _JobSlot, run_id: str, run_type: str) -> RunOutcome:
        scope = slot.scope
        tracker = slot.tracker
        run_started_at = self._clock()
        logger.info("sync_started scope=%s run_type=%s run_id=%s", scope.key, run_type, run_id)

        try:
            records = self._fetch(scope, tracker, run_id)
            # a watchdog takeover during a long fetch leaves the store to the newer run
            slot.ensure_owner(run_id)
            tracker.enter_phase(SyncPhase.STORE, total=len(records), run_id=run_id)
            stored = self._store(slot, records, run_id)
            slot.ensure_owner(run_id)
            tracker.enter_phase(SyncPhase.PRUNE, run_id=run_id)
            pruned = self._prune(scope, run_started_at)
            tracker.complete(run_id=run_id)
            outcome = RunOutcome(
                platform=scope.key,
                status="success",
                package_count=stored,
                deactivated=pruned.deactivated,
                deleted=pruned.deleted,
            )
            logger.info(
                "sync_completed scope=%s packages=%s deactivated=%s deleted=%s",
                scope.key,
                stored,
                pruned.deactivated,
                pruned.deleted,
            )
        except RunSuperseded as e:
            outcome = RunOutcome(platform=scope.key, status="failed", error=str(e))
            logger.warning("sync_superseded scope=%s run_id=%s", scope.key, run_id)
        except Exception as e:
            message = str(e) or type(e).__name__
            tracker.fail(message, run_id=run_id)
            outcome = RunOutcome(platform=scope.key, status="failed", error=message)
            logger.exception("sync_failed scope=%s error=%s", scope.key, message)

        self._record_history(scope, run_type, run_started_at, outcome)
        return outcome

    def _fetch(self, scope: SyncScope, tracker: ProgressTracker, run_id: str) -> list[PackageRecord]:
        fetcher = self.fetchers.get(scope.key)
        if fetcher is None:
            raise UpstreamFetchError(f"No fetcher configured for scope '{scope.key}'")

        def on_progress(current: int, total: int, item_label: str = "") -> None:
            tracker.report_fetch_progress(current, total, item_label, run_id=run_id)

        try:
            fetched = list(fetcher.fetch(on_progress))
        except RepoHubError:
            raise
        except Exception as e:
            raise UpstreamFetchError(str(e) or type(e).__name__) from e

        records = [r for r in fetched if scope.contains(r.platform_id, r.repository)]
        if len(records) != len(fetched):
            logger.warning(
                "sync_records_out_of_scope scope=%s dropped=%s", scope.key, len(fetched) - len(records)
            )
        return records

    def _store(self, slot: _JobSlot, records: list[PackageRecord], run_id: str) -> int:
        def on_progress(current: int, total: int) -> None:
            # called after each committed batch; stop before the next one once superseded
            slot.ensure_owner(run_id)
            slot.tracker.report_store_progress(current, total, run_id=run_id)

        try:
            return self.store.upsert_packages(records, seen_at=self._clock(), progress=on_progress)
        except RepoHubError:
            raise
        except Exception as e:
            raise StoreError(str(e) or type(e).__name__) from e

    def _prune(self, scope: SyncScope, run_started_at: datetime) -> PruneResult:
        try:
            return self.pruning.apply(self.store, scope, run_started_at)
        except RepoHubError:
            raise
        except Exception as e:
            raise StoreError(str(e) or type(e).__name__) from e

    def _record_history(self, scope: SyncScope, run_type: str, started_at: datetime, outcome: RunOutcome) -> None:
        try:
            self.store.record_run(
                scope=scope.key,
                run_type=run_type,
                status=outcome.status,
                started_at=started_at,
                finished_at=self._clock(),
                summary=outcome.model_dump(mode="json"),
            )
        except Exception:
            logger.exception("sync_history_write_failed scope=%s", scope.key)
