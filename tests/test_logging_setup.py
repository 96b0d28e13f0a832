import logging
from pathlib import Path

import pytest

from repohub.core.logging_setup import setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)


def test_setup_logging_writes_event_lines_to_file(tmp_path: Path, restore_root_logger):
    logfile = tmp_path / "runtime" / "service.log"

    setup_logging("debug", str(logfile))
    logging.getLogger("sync").info("sync_started scope=%s", "arch")
    for h in logging.getLogger().handlers:
        h.flush()

    text = logfile.read_text(encoding="utf-8")
    assert "[INFO] [root] logging_initialized level=DEBUG" in text
    assert "[INFO] [sync] sync_started scope=arch" in text
    assert logging.getLogger("urllib3").level == logging.INFO
    assert logging.getLogger("uvicorn.access").propagate is True


def test_setup_logging_replaces_previous_handlers(tmp_path: Path, restore_root_logger):
    setup_logging("INFO", str(tmp_path / "a.log"))
    setup_logging("WARNING")
    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.WARNING
