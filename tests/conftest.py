from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from repohub.core.config import AppConfig
from repohub.storage.db import SqlitePackageStore
from repohub.sync.engine import build_engine
from repohub.sync.models import PackageRecord

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeFetcher:
    """Returns fixed records; optionally blocks until released or raises."""

    def __init__(self, records=None, error: Exception | None = None, blocking: bool = False):
        self.records = list(records or [])
        self.error = error
        self.started = threading.Event()
        self.release = threading.Event()
        if not blocking:
            self.release.set()
        self.calls = 0

    def fetch(self, progress):
        self.calls += 1
        self.started.set()
        assert self.release.wait(5), "fetcher was never released"
        if self.error is not None:
            raise self.error
        total = len(self.records)
        for i, rec in enumerate(self.records, start=1):
            progress(i, total, rec.name)
        return list(self.records)


def make_records(platform: str, repository: str | None, names) -> list[PackageRecord]:
    return [
        PackageRecord(platform_id=platform, repository=repository, name=n, version="1.0", description=f"{n} pkg")
        for n in names
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> SqlitePackageStore:
    return SqlitePackageStore(str(tmp_path / "runtime" / "repohub.db"))


@pytest.fixture
def cfg(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.database.path = str(tmp_path / "runtime" / "repohub.db")
    cfg.logging.file = str(tmp_path / "runtime" / "service.log")
    return cfg


@pytest.fixture
def make_engine(cfg: AppConfig, store: SqlitePackageStore, clock: FakeClock):
    def _make(fetchers=None, **overrides):
        for section, values in overrides.items():
            target = getattr(cfg, section)
            for key, value in values.items():
                setattr(target, key, value)
        return build_engine(cfg, store=store, fetchers=fetchers or {}, clock=clock)

    return _make
