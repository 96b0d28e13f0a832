import sqlite3
import threading
from datetime import timedelta

import pytest

from repohub.core.errors import AuthDenied, SyncAlreadyRunning, UnknownScopeError
from repohub.sync.models import JobStatus, SyncPhase
from repohub.sync.scopes import get_scope

from conftest import T0, FakeFetcher, make_records


class _BrokenStore:
    """Delegates to a real store but fails one chosen operation."""

    def __init__(self, inner, broken: str):
        self._inner = inner
        self._broken = broken

    def __getattr__(self, name):
        if name == self._broken:
            def _raise(*args, **kwargs):
                raise sqlite3.OperationalError("database is locked")

            return _raise
        return getattr(self._inner, name)


def test_trigger_rejects_second_run_of_same_scope(make_engine):
    fetcher = FakeFetcher(make_records("fedora", "fedora", ["dnf", "rpm"]), blocking=True)
    engine = make_engine({"fedora": fetcher})
    orch = engine.orchestrator

    first = orch.trigger_sync("fedora")
    assert first.status is JobStatus.RUNNING
    assert first.in_progress is True
    assert fetcher.started.wait(5)

    with pytest.raises(SyncAlreadyRunning):
        orch.trigger_sync("fedora")
    assert orch.is_running("fedora") is True

    fetcher.release.set()
    assert orch.wait("fedora", timeout=5)

    snap = orch.get_status("fedora")
    assert snap.status is JobStatus.COMPLETE
    assert snap.in_progress is False
    assert fetcher.calls == 1
    assert orch.is_running("fedora") is False


def test_scopes_run_independently(make_engine):
    arch = FakeFetcher(make_records("arch", "official", ["pacman"]), blocking=True)
    aur = FakeFetcher(make_records("arch", "aur", ["yay"]))
    engine = make_engine({"arch": arch, "aur": aur})

    engine.orchestrator.trigger_sync("arch")
    outcome = engine.orchestrator.run_now("aur")
    assert outcome.status == "success"

    arch.release.set()
    assert engine.orchestrator.wait("arch", timeout=5)
    assert engine.orchestrator.get_status("arch").status is JobStatus.COMPLETE


def test_full_listing_replaces_previous_state(make_engine, store):
    store.upsert_packages(make_records("arch", "official", ["foo", "bar"]), seen_at=T0 - timedelta(days=1))
    names = ["bar"] + [f"pkg{i:02d}" for i in range(99)]
    engine = make_engine({"arch": FakeFetcher(make_records("arch", "official", names))})

    outcome = engine.orchestrator.run_now("arch")

    assert outcome.status == "success"
    assert outcome.package_count == 100
    assert outcome.deactivated == 1
    packages = {p.name: p for p in store.list_packages(get_scope("arch"))}
    assert packages["foo"].is_active is False
    assert packages["bar"].is_active is True
    assert store.count_packages(get_scope("arch")) == 100

    snap = engine.orchestrator.get_status("arch")
    assert snap.status is JobStatus.COMPLETE
    assert snap.phase is SyncPhase.PRUNE
    assert (snap.fetch_progress, snap.fetch_total) == (100, 100)
    assert (snap.store_progress, snap.store_total) == (100, 100)
    assert snap.in_progress is False


def test_fetch_failure_skips_store_and_prune(make_engine, store):
    store.upsert_packages(make_records("arch", "official", ["foo"]), seen_at=T0 - timedelta(days=1))
    engine = make_engine({"arch": FakeFetcher(error=RuntimeError("upstream down"))})

    outcome = engine.orchestrator.run_now("arch")

    assert outcome.status == "failed"
    assert outcome.error == "upstream down"
    snap = engine.orchestrator.get_status("arch")
    assert snap.status is JobStatus.ERROR
    assert snap.phase is SyncPhase.FETCH
    assert snap.error == "upstream down"
    assert snap.in_progress is False
    assert store.list_packages(get_scope("arch"))[0].is_active is True

    engine.orchestrator.fetchers["arch"] = FakeFetcher(make_records("arch", "official", ["foo"]))
    assert engine.orchestrator.run_now("arch").status == "success"


def test_store_failure_is_reported_on_tracker(make_engine, store):
    engine = make_engine({"aur": FakeFetcher(make_records("arch", "aur", ["yay"]))})
    engine.orchestrator.store = _BrokenStore(store, "upsert_packages")

    outcome = engine.orchestrator.run_now("aur")

    assert outcome.status == "failed"
    snap = engine.orchestrator.get_status("aur")
    assert snap.status is JobStatus.ERROR
    assert snap.phase is SyncPhase.STORE
    assert snap.error == "database is locked"
    assert engine.orchestrator.is_running("aur") is False


def test_prune_failure_is_reported_on_tracker(make_engine, store):
    engine = make_engine({"windows": FakeFetcher(make_records("windows", None, ["Git.Git"]))})
    engine.orchestrator.store = _BrokenStore(store, "deactivate_unseen")

    outcome = engine.orchestrator.run_now("windows")

    assert outcome.status == "failed"
    snap = engine.orchestrator.get_status("windows")
    assert snap.phase is SyncPhase.PRUNE
    assert snap.status is JobStatus.ERROR
    assert store.count_packages(get_scope("windows")) == 1


def test_missing_fetcher_fails_run(make_engine):
    engine = make_engine({})
    outcome = engine.orchestrator.run_now("ubuntu")
    assert outcome.status == "failed"
    assert outcome.error == "No fetcher configured for scope 'ubuntu'"
    assert engine.orchestrator.get_status("ubuntu").status is JobStatus.ERROR


def test_out_of_scope_records_are_dropped(make_engine, store):
    mixed = (
        make_records("arch", "official", ["pacman"])
        + make_records("arch", "aur", ["yay"])
        + make_records("debian", "main", ["apt"])
    )
    engine = make_engine({"arch": FakeFetcher(mixed)})

    outcome = engine.orchestrator.run_now("arch")

    assert outcome.package_count == 1
    assert store.count_packages(get_scope("arch")) == 1
    assert store.count_packages(get_scope("aur")) == 0
    assert store.count_packages(get_scope("debian")) == 0


def test_unknown_scope_is_checked_before_auth(make_engine):
    engine = make_engine({}, auth={"server_only": True, "secret_key": "k"})
    with pytest.raises(UnknownScopeError):
        engine.orchestrator.trigger_sync("gentoo")
    with pytest.raises(UnknownScopeError):
        engine.orchestrator.get_status("gentoo")


def test_denied_trigger_does_not_start_a_run(make_engine):
    fetcher = FakeFetcher(make_records("arch", "official", ["pacman"]))
    engine = make_engine({"arch": fetcher}, auth={"server_only": True, "secret_key": "k"})

    with pytest.raises(AuthDenied) as exc:
        engine.orchestrator.trigger_sync("arch", presented_secret="wrong")
    assert exc.value.reason == "Invalid sync secret key"
    assert fetcher.calls == 0
    assert engine.orchestrator.get_status("arch").status is JobStatus.IDLE

    engine.orchestrator.trigger_sync("arch", presented_secret="k")
    assert engine.orchestrator.wait("arch", timeout=5)
    assert engine.orchestrator.get_status("arch").status is JobStatus.COMPLETE


def test_scope_keys_are_case_insensitive(make_engine):
    engine = make_engine({"aur": FakeFetcher(make_records("arch", "aur", ["yay"]))})
    assert engine.orchestrator.run_now(" AUR ").status == "success"
    assert engine.orchestrator.get_status("aur").status is JobStatus.COMPLETE


def test_each_run_is_recorded_in_history(make_engine, store):
    engine = make_engine({"macos": FakeFetcher(make_records("macos", "homebrew", ["wget"]))})
    engine.orchestrator.run_now("macos")
    engine.orchestrator.run_now("debian", run_type="scheduled")

    runs = store.recent_runs(limit=5)
    assert [(r["scope"], r["run_type"], r["status"]) for r in runs] == [
        ("debian", "scheduled", "failed"),
        ("macos", "manual_cli", "success"),
    ]
    assert runs[1]["summary"]["package_count"] == 1


def test_watchdog_takes_over_an_overdue_run(make_engine, store, clock):
    stuck = FakeFetcher(make_records("arch", "official", ["old"]), blocking=True)
    engine = make_engine({"arch": stuck}, sync={"max_run_minutes": 1})
    orch = engine.orchestrator

    orch.trigger_sync("arch")
    assert stuck.started.wait(5)
    stuck_thread = orch._slot("arch").thread

    with pytest.raises(SyncAlreadyRunning):
        orch.trigger_sync("arch")

    clock.advance(minutes=2)
    orch.fetchers["arch"] = FakeFetcher(make_records("arch", "official", ["new"]))
    orch.trigger_sync("arch")
    assert orch.wait("arch", timeout=5)
    assert orch.get_status("arch").status is JobStatus.COMPLETE

    # the abandoned run finishing late must touch neither the new run's state nor the store
    stuck.release.set()
    stuck_thread.join(5)
    assert not stuck_thread.is_alive()
    snap = orch.get_status("arch")
    assert snap.status is JobStatus.COMPLETE
    assert snap.in_progress is False
    assert orch.is_running("arch") is False

    active = {p.name for p in store.list_packages(get_scope("arch"), include_inactive=False)}
    assert active == {"new"}
    assert store.count_packages(get_scope("arch"), active_only=False) == 1

    late = store.recent_runs(limit=1, scope="arch")[0]
    assert late["status"] == "failed"
    assert "superseded" in late["summary"]["error"]


def test_without_watchdog_a_stuck_run_keeps_the_slot(make_engine, clock):
    stuck = FakeFetcher(make_records("arch", "official", ["old"]), blocking=True)
    engine = make_engine({"arch": stuck})

    engine.orchestrator.trigger_sync("arch")
    clock.advance(days=1)
    with pytest.raises(SyncAlreadyRunning):
        engine.orchestrator.trigger_sync("arch")

    stuck.release.set()
    assert engine.orchestrator.wait("arch", timeout=5)


def test_simultaneous_triggers_start_exactly_one_run(make_engine):
    fetcher = FakeFetcher(make_records("fedora", "fedora", ["dnf"]), blocking=True)
    engine = make_engine({"fedora": fetcher})
    callers = 8
    barrier = threading.Barrier(callers)
    started, rejected, unexpected = [], [], []
    lock = threading.Lock()

    def _trigger():
        barrier.wait(5)
        try:
            snap = engine.orchestrator.trigger_sync("fedora")
        except SyncAlreadyRunning:
            with lock:
                rejected.append(1)
        except Exception as e:
            with lock:
                unexpected.append(e)
        else:
            with lock:
                started.append(snap)

    threads = [threading.Thread(target=_trigger) for _ in range(callers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert unexpected == []
    assert len(started) == 1
    assert len(rejected) == callers - 1
    assert started[0].status is JobStatus.RUNNING

    fetcher.release.set()
    assert engine.orchestrator.wait("fedora", timeout=5)
    assert fetcher.calls == 1
    assert engine.orchestrator.get_status("fedora").status is JobStatus.COMPLETE
