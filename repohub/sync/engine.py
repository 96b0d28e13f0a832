from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from repohub.core.config import AppConfig
from repohub.providers.base import Fetcher
from repohub.providers.json_index import build_fetchers
from repohub.storage.db import SqlitePackageStore
from repohub.sync.auth import AuthGate
from repohub.sync.orchestrator import SyncOrchestrator
from repohub.sync.pruning import PruningPolicy
from repohub.sync.scheduler import AutoScheduler, SchedulerLoop
from repohub.sync.scopes import PLATFORM_SEED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncEngine:
    """Process-wide registry of the sync services, built once at startup."""

    config: AppConfig
    auth: AuthGate
    store: SqlitePackageStore
    orchestrator: SyncOrchestrator
    scheduler: AutoScheduler
    loop: SchedulerLoop

    def init_platforms(self) -> int:
        return self.store.ensure_platforms(PLATFORM_SEED)


def build_engine(
    cfg: AppConfig,
    *,
    store: Optional[SqlitePackageStore] = None,
    fetchers: Optional[Mapping[str, Fetcher]] = None,
    clock: Callable[[], datetime] = _utcnow,
) -> SyncEngine:
    auth = AuthGate.from_config(cfg)
    store = store or SqlitePackageStore(cfg.database.path)
    orchestrator = SyncOrchestrator(
        store,
        build_fetchers(cfg) if fetchers is None else fetchers,
        auth=auth,
        pruning=PruningPolicy(cfg.sync.prune_grace_days, cfg.sync.prune_hard_delete_days),
        clock=clock,
        max_run_minutes=cfg.sync.max_run_minutes,
    )
    scheduler = AutoScheduler(orchestrator, cfg.sync.auto_sync_days, clock=clock)
    loop = SchedulerLoop(scheduler, cfg.sync.auto_sync_check_sec)
    return SyncEngine(
        config=cfg,
        auth=auth,
        store=store,
        orchestrator=orchestrator,
        scheduler=scheduler,
        loop=loop,
    )
