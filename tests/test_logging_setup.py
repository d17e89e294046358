from __future__ import annotations

import logging
from pathlib import Path

import allure
import pytest

from scenic_jobs.logging_setup import setup_logging

pytestmark = [
    allure.epic("Job Orchestrator"),
    allure.feature("Logging"),
]


@pytest.fixture()
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(False)


def test_setup_logging_writes_everything_to_file(tmp_path: Path, restore_root_logger) -> None:
    log_file = setup_logging(log_dir=tmp_path / "logs")

    logging.getLogger("scenic_jobs.orchestrator.executor").info("Task abc completed")
    logging.getLogger("sqlalchemy.engine").debug("SELECT 1")
    for handler in restore_root_logger.handlers:
        handler.flush()

    assert log_file == tmp_path / "logs" / "scenic-jobs.log"
    content = log_file.read_text("utf-8")
    assert "scenic_jobs.orchestrator.executor: Task abc completed" in content
    assert "sqlalchemy.engine: SELECT 1" in content


def test_console_hides_third_party_noise(tmp_path: Path, restore_root_logger, capsys) -> None:
    setup_logging(log_dir=tmp_path, console_level=logging.DEBUG)

    logging.getLogger("scenic_jobs.orchestrator.scheduler").info("Scheduler started")
    logging.getLogger("sqlalchemy.engine").warning("pool recycled")
    logging.getLogger("sqlalchemy.engine").error("database is locked")

    err = capsys.readouterr().err
    assert "Scheduler started" in err
    assert "pool recycled" not in err
    assert "database is locked" in err
