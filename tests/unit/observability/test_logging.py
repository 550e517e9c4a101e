"""Queue-backed JSON-lines logging with correlation and redaction."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest

from shipgate.observability.logging import (
    LoggingConfig,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    reset_correlation_fields,
    set_correlation_fields,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _logger_name() -> str:
    return f"shipgate.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


@pytest.mark.unit
def test_json_lines_carry_correlation_and_redact_credentials(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-redaction", base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(pipeline="release", stage="sast", attempt=2):
        logger.info(
            "posting to sonar with token=squ_FAKE0123456789abcdefghij",
            extra={"nested": {"password": "hunter2", "safe": "ok"}},
        )
    shutdown_logging(handle)

    assert handle.log_path == tmp_path / "run-redaction" / "shipgate.jsonl"
    (record,) = _read_json_lines(handle.log_path)
    assert record["run_id"] == "run-redaction"
    assert record["pipeline"] == "release"
    assert record["stage"] == "sast"
    assert record["attempt"] == "2"
    assert record["level"] == "INFO"
    assert record["fields"] == {"nested": {"password": "***REDACTED***", "safe": "ok"}}
    text = handle.log_path.read_text(encoding="utf-8")
    assert "squ_FAKE" not in text
    assert "hunter2" not in text


@pytest.mark.unit
def test_setup_logging_reads_the_observability_section(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_logging(
        {"log_level": "WARNING", "log_dir": str(tmp_path), "redact_secrets": False},
        run_id="run-wrapper",
        logger_name=logger_name,
    )
    logger = logging.getLogger(logger_name)

    logger.info("dropped by level")
    logger.warning("kept", extra={"token": "t-123456"})
    shutdown_logging()

    (record,) = _read_json_lines(tmp_path / "run-wrapper" / "shipgate.jsonl")
    assert record["message"] == "kept"
    assert record["fields"] == {"token": "t-123456"}
    assert handle.is_shutdown
    assert get_active_logging_handle() is None


@pytest.mark.unit
def test_level_argument_overrides_config(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_logging(
        {"log_level": "ERROR", "log_dir": str(tmp_path)},
        run_id="run-level",
        level="DEBUG",
        logger_name=logger_name,
    )

    logging.getLogger(logger_name).debug("visible")
    shutdown_logging(handle)

    assert [item["message"] for item in _read_json_lines(handle.log_path)] == ["visible"]


@pytest.mark.unit
def test_exceptions_are_serialized(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_logging({"log_dir": str(tmp_path)}, run_id="run-exc", logger_name=logger_name)

    try:
        raise RuntimeError("adapter crashed")
    except RuntimeError:
        logging.getLogger(logger_name).exception("stage failed")
    shutdown_logging(handle)

    (record,) = _read_json_lines(handle.log_path)
    assert "RuntimeError: adapter crashed" in str(record["exception"])


@pytest.mark.unit
async def test_concurrent_tasks_keep_their_own_correlation(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_logging({"log_dir": str(tmp_path)}, run_id="run-tasks", logger_name=logger_name)
    logger = logging.getLogger(logger_name)

    async def stage(name: str) -> None:
        with correlation_scope(stage=name):
            await asyncio.sleep(0)
            logger.info("finished %s", name)

    await asyncio.gather(stage("test"), stage("lint"))
    shutdown_logging(handle)

    records = _read_json_lines(handle.log_path)
    assert {(item["stage"], item["message"]) for item in records} == {
        ("test", "finished test"),
        ("lint", "finished lint"),
    }


@pytest.mark.unit
def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_logging({"log_dir": str(tmp_path)}, run_id="run-threads", logger_name=logger_name)
    logger = logging.getLogger(logger_name)

    def worker(index: int) -> None:
        for item in range(25):
            logger.info("worker %d item %d", index, item)

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    shutdown_logging(handle)

    assert len(_read_json_lines(handle.log_path)) == 100
    assert handle.dropped_records == 0


@pytest.mark.unit
def test_new_setup_replaces_the_previous_handle(tmp_path: Path) -> None:
    first = setup_logging({"log_dir": str(tmp_path)}, run_id="run-a", logger_name=_logger_name())
    second = setup_logging({"log_dir": str(tmp_path)}, run_id="run-b", logger_name=_logger_name())

    assert first.is_shutdown
    assert get_active_logging_handle() is second
    second.shutdown()
    second.shutdown()


@pytest.mark.unit
def test_correlation_fields_bind_and_unbind() -> None:
    token = set_correlation_fields(run_id="run-1", stage="build")
    try:
        inner = set_correlation_fields(stage=None, attempt=1)
        assert get_correlation_context() == {"run_id": "run-1", "attempt": "1"}
        reset_correlation_fields(inner)
        assert get_correlation_context() == {"run_id": "run-1", "stage": "build"}
    finally:
        reset_correlation_fields(token)
    assert get_correlation_context() == {}
    with pytest.raises(ValueError, match="must not be empty"):
        set_correlation_fields(stage=" ")


@pytest.mark.unit
@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"run_id": " "}, "run_id must not be empty"),
        ({"log_filename": "nested/out.jsonl"}, "path separators"),
        ({"queue_size": 0}, "queue_size"),
        ({"level": "CHATTY"}, "unsupported logging level"),
    ],
)
def test_invalid_logging_config_is_rejected(
    tmp_path: Path, overrides: dict[str, object], message: str
) -> None:
    fields: dict[str, object] = {"run_id": "run-x", "base_log_dir": tmp_path, **overrides}

    with pytest.raises(ValueError, match=message):
        setup_structured_logging(LoggingConfig(**fields))  # type: ignore[arg-type]
