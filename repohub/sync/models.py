from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from repohub.sync.scopes import Platform


class _ApiModel(BaseModel):
    # camelCase on the wire, snake_case in Python.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PackageRecord(BaseModel):
    platform_id: Platform
    repository: Optional[str] = None
    name: str = Field(min_length=1)
    version: str = ""
    description: str = ""
    is_active: bool = True
    last_seen_at: Optional[datetime] = None

    @field_validator("repository", mode="before")
    @classmethod
    def _blank_repository_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.ERROR)


class SyncPhase(str, Enum):
    FETCH = "fetch"
    STORE = "store"
    PRUNE = "prune"


class SyncJobState(_ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    scope: str
    status: JobStatus = JobStatus.IDLE
    phase: Optional[SyncPhase] = None
    fetch_progress: int = 0
    fetch_total: int = 0
    store_progress: int = 0
    store_total: int = 0
    current_item: str = ""
    error: Optional[str] = None
    in_progress: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class AuthDecision:
    allowed: bool
    reason: str | None = None


class RunOutcome(_ApiModel):
    platform: str
    status: Literal["success", "failed", "skipped"]
    package_count: Optional[int] = None
    deactivated: int = 0
    deleted: int = 0
    error: Optional[str] = None


class SweepSummary(_ApiModel):
    total_platforms: int
    successful: int
    failed: int


class AutoSyncReport(_ApiModel):
    message: str
    ran: bool = False
    timestamp: Optional[datetime] = None
    last_sync: Optional[datetime] = None
    next_sync: Optional[datetime] = None
    hours_until_next: Optional[int] = None
    results: list[RunOutcome] = Field(default_factory=list)
    summary: Optional[SweepSummary] = None


class AutoSyncStatus(_ApiModel):
    enabled: bool
    interval_days: int
    last_sync: Optional[datetime] = None
    next_sync: Optional[datetime] = None
    status: Literal["ready", "waiting", "running"]


class PlatformInfo(_ApiModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    package_manager: str = ""
    description: str = ""


class PlatformUpdate(_ApiModel):
    name: Optional[str] = None
    package_manager: Optional[str] = None
    description: Optional[str] = None


class PackageInfo(_ApiModel):
    id: int
    platform_id: str
    repository: Optional[str] = None
    name: str
    version: str = ""
    description: str = ""
    is_active: bool = True
    last_seen_at: Optional[datetime] = None


class PackageUpdate(_ApiModel):
    version: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
