from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from repohub.core.config import DEFAULT_CONFIG_PATH, load_config, masked_config
from repohub.core.errors import SyncAlreadyRunning, UnknownScopeError
from repohub.sync.engine import SyncEngine, build_engine
from repohub.sync.scopes import SCOPES_BY_KEY

app = typer.Typer(add_completion=False, help="Package sync engine for repohub.")
console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _build_engine() -> SyncEngine:
    return build_engine(load_config())


@app.command()
def serve():
    """Run the HTTP API."""
    from repohub.web.main import main as web_main

    web_main()


@app.command()
def status():
    """Show per-scope sync state and stored package counts."""
    engine = _build_engine()

    table = Table(title="repohub sync status")
    table.add_column("Scope")
    table.add_column("Fetcher")
    table.add_column("Status")
    table.add_column("Active packages", justify="right")
    table.add_column("Last run")
    for scope in engine.orchestrator.scopes:
        runs = engine.store.recent_runs(limit=1, scope=scope.key)
        last = runs[0] if runs else None
        table.add_row(
            scope.key,
            "yes" if scope.key in engine.orchestrator.fetchers else "no",
            engine.orchestrator.get_status(scope.key).status.value,
            str(engine.store.count_packages(scope)),
            f"{last['status']} @ {last['finished_at']}" if last else "-",
        )
    console.print(table)

    auto = engine.scheduler.status()
    console.print(
        f"auto_sync: {'on' if auto.enabled else 'off'} interval_days={auto.interval_days} "
        f"server_only={'yes' if engine.auth.server_only else 'no'} "
        f"secret_configured={'yes' if engine.auth.secret_configured else 'no'}"
    )


@app.command()
def sync(scope: str = typer.Argument(..., help="Scope key, e.g. arch, aur, windows.")):
    """Run one scope's fetch/store/prune pipeline in the foreground."""
    engine = _build_engine()
    try:
        outcome = engine.orchestrator.run_now(scope, run_type="manual_cli")
    except UnknownScopeError as e:
        _dump({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    except SyncAlreadyRunning as e:
        _dump({"ok": False, "error": str(e)})
        raise typer.Exit(3)
    _dump(outcome.model_dump(mode="json", by_alias=True))
    if outcome.status != "success":
        raise typer.Exit(2)


@app.command("auto-sync")
def auto_sync(force: bool = typer.Option(False, "--force", help="Sweep even if disabled or not due.")):
    """Sweep every scope sequentially, as the scheduled run does."""
    engine = _build_engine()
    report = engine.scheduler.run_if_due(force=force)
    _dump(report.model_dump(mode="json", by_alias=True))
    if report.summary is not None and report.summary.failed > 0:
        raise typer.Exit(2)


@app.command("init-platforms")
def init_platforms():
    """Seed platform metadata rows (idempotent)."""
    engine = _build_engine()
    inserted = engine.init_platforms()
    _dump({"ok": True, "inserted": inserted, "platforms": [p.id for p in engine.store.list_platforms()]})


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", min=1, max=500),
    scope: Optional[str] = typer.Option(None, "--scope"),
):
    """Show recent sync runs."""
    engine = _build_engine()
    items = engine.store.recent_runs(limit=limit, scope=scope)

    table = Table(title="recent sync runs")
    for col in ("id", "scope", "type", "status", "finished", "detail"):
        table.add_column(col)
    for item in items:
        summary = item.get("summary") or {}
        detail = summary.get("error") or f"packages={summary.get('package_count')}"
        table.add_row(
            str(item["id"]),
            item["scope"] or "",
            item["run_type"] or "",
            item["status"] or "",
            item["finished_at"] or "",
            str(detail),
        )
    console.print(table)


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show effective config (file plus environment), secret masked."""
    cfg = load_config(path)
    _dump(masked_config(cfg))


def _parent_ready(target: str) -> Optional[str]:
    """Create the parent directory of ``target``; the error text on failure."""
    try:
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return str(e)
    return None


@app.command("config-validate")
def config_validate(
    path: Path = DEFAULT_CONFIG_PATH,
    strict: bool = typer.Option(False, "--strict", help="Exit 2 when any check fails."),
):
    """Check auth, fetcher scopes, port and runtime paths before serving."""
    checks: dict[str, bool] = {"config_exists": path.exists()}
    warnings: list[str] = []
    errors: list[str] = []

    try:
        cfg = load_config(path)
    except Exception as e:
        errors.append(f"load_config_failed: {e}")
        cfg = None

    if cfg is not None:
        checks["secret_configured"] = bool(cfg.auth.secret_key)
        if cfg.auth.server_only and not cfg.auth.secret_key:
            errors.append("server_only_without_secret: every sync trigger will be denied")
        elif not cfg.auth.secret_key:
            warnings.append("secret_not_configured: write endpoints will be denied")

        unknown = sorted(k for k in cfg.fetchers if k.strip().lower() not in SCOPES_BY_KEY)
        checks["fetcher_scopes_valid"] = not unknown
        if unknown:
            errors.append(f"unknown_fetcher_scopes: {','.join(unknown)}")
        configured = {k.strip().lower() for k in cfg.fetchers}
        missing = [k for k in SCOPES_BY_KEY if k not in configured]
        if missing:
            warnings.append(f"scopes_without_fetcher: {','.join(missing)}")

        checks["web_port_valid"] = 1 <= int(cfg.web_port) <= 65535
        if not checks["web_port_valid"]:
            errors.append(f"web_port_out_of_range: {cfg.web_port}")

        for key, target in (("database", cfg.database.path), ("log", cfg.logging.file)):
            problem = _parent_ready(target)
            checks[f"{key}_parent_ready"] = problem is None
            if problem:
                errors.append(f"{key}_parent_unavailable: {problem}")

        if cfg.sync.auto_sync_days > 0 and cfg.sync.auto_sync_check_sec == 0:
            warnings.append("auto_sync_needs_external_trigger: POST /api/auto-sync from a scheduler")

    ok = not errors
    _dump(
        {
            "ok": ok,
            "checked_at": _now_iso(),
            "config_path": str(path),
            "checks": checks,
            "warnings": warnings,
            "errors": errors,
        }
    )
    if strict and not ok:
        raise typer.Exit(2)


def main():
    app()


if __name__ == "__main__":
    main()
