from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from repohub.core.errors import ConfigurationError
from repohub.sync.models import PackageRecord
from repohub.sync.scopes import SyncScope

logger = logging.getLogger("sync.prune")


class PrunableStore(Protocol):
    def deactivate_unseen(self, scope: SyncScope, cutoff: datetime) -> int: ...

    def delete_inactive(self, scope: SyncScope, cutoff: datetime) -> int: ...


@dataclass(frozen=True)
class PruneCutoffs:
    soft_cutoff: datetime
    hard_cutoff: Optional[datetime] = None


@dataclass(frozen=True)
class PruneResult:
    deactivated: int = 0
    deleted: int = 0


def should_deactivate(record: PackageRecord, cutoffs: PruneCutoffs) -> bool:
    if not record.is_active:
        return False
    return record.last_seen_at is None or record.last_seen_at < cutoffs.soft_cutoff


def should_delete(record: PackageRecord, cutoffs: PruneCutoffs) -> bool:
    if cutoffs.hard_cutoff is None or record.is_active:
        return False
    return record.last_seen_at is not None and record.last_seen_at < cutoffs.hard_cutoff


class PruningPolicy:
    """Retire records a full upstream listing no longer reports.

    Soft prune marks records inactive once ``last_seen_at`` falls before
    ``run_started_at - grace_days``. Hard delete is opt-in and only ever
    removes records that are already inactive.
    """

    def __init__(self, grace_days: int = 0, hard_delete_days: int = 0):
        if grace_days < 0 or hard_delete_days < 0:
            raise ConfigurationError(
                f"prune windows must be >= 0 (grace_days={grace_days}, hard_delete_days={hard_delete_days})"
            )
        self.grace_days = int(grace_days)
        self.hard_delete_days = int(hard_delete_days)

    @property
    def hard_delete_enabled(self) -> bool:
        return self.hard_delete_days > 0

    def cutoffs(self, run_started_at: datetime) -> PruneCutoffs:
        soft = run_started_at - timedelta(days=self.grace_days)
        hard = run_started_at - timedelta(days=self.hard_delete_days) if self.hard_delete_enabled else None
        return PruneCutoffs(soft_cutoff=soft, hard_cutoff=hard)

    def apply(self, store: PrunableStore, scope: SyncScope, run_started_at: datetime) -> PruneResult:
        cutoffs = self.cutoffs(run_started_at)
        deactivated = store.deactivate_unseen(scope, cutoffs.soft_cutoff)
        deleted = 0
        if cutoffs.hard_cutoff is not None:
            deleted = store.delete_inactive(scope, cutoffs.hard_cutoff)
        logger.info(
            "prune_applied scope=%s soft_cutoff=%s deactivated=%s deleted=%s",
            scope.key,
            cutoffs.soft_cutoff.isoformat(),
            deactivated,
            deleted,
        )
        return PruneResult(deactivated=deactivated, deleted=deleted)
