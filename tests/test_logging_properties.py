"""Property-based tests for logging configuration.

Every log entry must be JSON with timestamp, level and event fields, keep its
keyword context, and carry the user and device bound for a sync call.
"""

import json
import logging
import tempfile
from datetime import datetime
from pathlib import Path

import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from src.models.config import LoggingConfig
from src.utils.logging_config import (
    bind_sync_context,
    configure_logging,
    configure_logging_from_config,
)

LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _read_entries(log_file: Path) -> list[dict]:
    for handler in logging.root.handlers:
        handler.flush()
    return [json.loads(line) for line in log_file.read_text().splitlines() if line.strip()]


def _remove_file_handlers(log_file: Path) -> None:
    for handler in list(logging.root.handlers):
        if getattr(handler, "baseFilename", None) == str(log_file.resolve()):
            logging.root.removeHandler(handler)
            handler.close()


@given(
    configured_level=st.sampled_from(LEVELS),
    event_level=st.sampled_from(LEVELS),
    error_message=st.text(
        min_size=1, max_size=100, alphabet=st.characters(blacklist_categories=("Cs", "Cc"))
    ),
)
@settings(max_examples=50, deadline=None)
def test_log_entries_contain_required_fields(
    configured_level: str, event_level: str, error_message: str
) -> None:
    """
    For any configured level, entries at or above it are written as JSON with
    timestamp, level, event and context fields; entries below it are dropped.
    """
    with tempfile.TemporaryDirectory() as tmp:
        log_file = Path(tmp) / "sync.log"
        configure_logging(log_level=configured_level, json_logs=True, log_file=str(log_file))
        try:
            log = structlog.stdlib.get_logger("test_logger")
            getattr(log, event_level.lower())("operation_failed", error=error_message)
            entries = _read_entries(log_file)
        finally:
            _remove_file_handlers(log_file)

    if LEVELS.index(event_level) < LEVELS.index(configured_level):
        assert entries == [], f"{event_level} entry written at level {configured_level}"
        return

    assert len(entries) == 1, f"Expected exactly one entry, got {entries}"
    entry = entries[0]

    assert "timestamp" in entry, f"Log entry missing 'timestamp' field. Log entry: {entry}"
    datetime.fromisoformat(entry["timestamp"].replace("Z", "+00:00"))
    assert entry["level"].upper() == event_level, (
        f"Log level mismatch. Expected: {event_level}, Got: {entry['level']}"
    )
    assert entry["event"] == "operation_failed"
    assert entry["error"] == error_message
    assert entry["func_name"] == "test_log_entries_contain_required_fields"


def test_bound_sync_context_is_merged_into_entries(tmp_path: Path) -> None:
    log_file = tmp_path / "sync.log"
    configure_logging_from_config(
        LoggingConfig(log_level="INFO", json_logs=True, log_file=str(log_file))
    )
    try:
        log = structlog.stdlib.get_logger("test_logger")
        with bind_sync_context("user-1", "phone", request="batch_sync"):
            log.info("batch_sync_started", operation_count=2)
        log.info("after_request")
        entries = _read_entries(log_file)
    finally:
        _remove_file_handlers(log_file)

    inside, outside = entries
    assert inside["user_id"] == "user-1"
    assert inside["device_id"] == "phone"
    assert inside["request"] == "batch_sync"
    assert inside["operation_count"] == 2
    assert "user_id" not in outside


def test_console_renderer_for_development(tmp_path: Path) -> None:
    log_file = tmp_path / "sync.log"
    configure_logging(log_level="DEBUG", json_logs=False, log_file=str(log_file))
    try:
        structlog.stdlib.get_logger("test_logger").warning("cache_disabled")
        for handler in logging.root.handlers:
            handler.flush()
        output = log_file.read_text()
    finally:
        _remove_file_handlers(log_file)
        configure_logging(log_level="INFO", json_logs=True)

    assert "cache_disabled" in output
    assert not output.lstrip().startswith("{")
