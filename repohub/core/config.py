from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping

from pydantic import BaseModel, Field

logger = logging.getLogger("config")

PROJECT_ROOT = Path(os.environ.get("REPOHUB_HOME") or Path.cwd())
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"


class AuthConfig(BaseModel):
    # When enabled, sync triggers must present the shared secret.
    server_only: bool = False
    secret_key: str = ""


class SyncConfig(BaseModel):
    # 0 disables unattended multi-platform sweeps.
    auto_sync_days: int = Field(default=1, ge=0)
    # Seconds between in-process due checks; 0 leaves triggering to an external cron.
    auto_sync_check_sec: int = Field(default=0, ge=0, le=86400)
    prune_grace_days: int = Field(default=0, ge=0)
    # 0 disables hard deletes of long-inactive packages.
    prune_hard_delete_days: int = Field(default=0, ge=0)
    # 0 disables the stale-run watchdog.
    max_run_minutes: int = Field(default=0, ge=0)


class FetcherConfig(BaseModel):
    url: str
    # Dotted path to the package list inside the document; empty means the document root.
    records_path: str = ""
    name_field: str = "name"
    version_field: str = "version"
    description_field: str = "description"
    timeout_sec: int = 60


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "repohub.db")


class AppConfig(BaseModel):
    auth: AuthConfig = Field(default_factory=AuthConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    fetchers: dict[str, FetcherConfig] = Field(default_factory=dict)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    web_bind_host: str = "127.0.0.1"
    web_port: int = 8765


_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = (environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("env_int_invalid name=%s value=%r default=%s", name, raw, default)
        return default
    if value < 0:
        logger.warning("env_int_negative name=%s value=%s clamped=0", name, value)
        return 0
    return value


def apply_env_overrides(cfg: AppConfig, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Overlay the SYNC_* / AUTO_SYNC_* / PRUNE_* environment variables onto ``cfg``."""
    env = os.environ if environ is None else environ

    if "SYNC_SERVER_ONLY" in env:
        cfg.auth.server_only = env["SYNC_SERVER_ONLY"].strip().lower() in _TRUE_VALUES
    if "SYNC_SECRET_KEY" in env:
        cfg.auth.secret_key = env["SYNC_SECRET_KEY"]

    cfg.sync.auto_sync_days = _env_int(env, "AUTO_SYNC_DAYS", cfg.sync.auto_sync_days)
    cfg.sync.prune_grace_days = _env_int(env, "PRUNE_GRACE_DAYS", cfg.sync.prune_grace_days)
    cfg.sync.prune_hard_delete_days = _env_int(env, "PRUNE_HARD_DELETE_DAYS", cfg.sync.prune_hard_delete_days)
    return cfg


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)


def _dump_yaml(cfg: AppConfig) -> str:
    import yaml

    return yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False)


def load_config(path: Path = DEFAULT_CONFIG_PATH, environ: Mapping[str, str] | None = None) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                path.write_text(template_text, encoding="utf-8")
            except Exception as e:
                logger.warning("config_template_invalid path=%s error=%s", DEFAULT_CONFIG_TEMPLATE_PATH, e)
                cfg = AppConfig()
                path.write_text(_dump_yaml(cfg), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(_dump_yaml(cfg), encoding="utf-8")
    else:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        cfg = AppConfig.model_validate(data)

    apply_env_overrides(cfg, environ)
    ensure_runtime_dirs(cfg)
    return cfg


def masked_config(cfg: AppConfig) -> dict:
    data = cfg.model_dump()
    if data["auth"].get("secret_key"):
        data["auth"]["secret_key"] = "***"
    return data
