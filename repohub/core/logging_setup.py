from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

# Loggers sharing the root handlers instead of their own.
ROUTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# Chatty third-party loggers and the lowest level they may emit at.
QUIET_LOGGERS = {"urllib3": logging.INFO}


def _attach(root: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


def setup_logging(level: str, logfile: str | None = None):
    """Configure the root logger once per process.

    Sync workers run on background threads; they log through module loggers
    (``sync``, ``sync.prune``, ``scheduler``, ``store``, ``fetch``) that all
    propagate here, so one file holds the whole run timeline.
    """
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)
    for h in list(root.handlers):
        root.removeHandler(h)

    if logfile:
        Path(logfile).parent.mkdir(parents=True, exist_ok=True)
        _attach(root, logging.FileHandler(logfile, encoding="utf-8"), log_level)
    _attach(root, logging.StreamHandler(), log_level)

    for name in ROUTED_LOGGERS:
        routed = logging.getLogger(name)
        routed.handlers.clear()
        routed.setLevel(log_level)
        routed.propagate = True

    for name, floor in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(log_level, floor))

    root.info("logging_initialized level=%s file=%s", logging.getLevelName(log_level), logfile or "-")
