"""Tests for library logging setup."""

import logging

import pytest

from firepilot import _logging
from firepilot._logging import LIBRARY_LOGGER_NAME, ContextFormatter, configure_logging, get_logger


@pytest.fixture
def lib_logger():
    """Library logger restored to its original handlers and level after the test."""
    lib = logging.getLogger(LIBRARY_LOGGER_NAME)
    handlers, level = list(lib.handlers), lib.level
    yield lib
    for handler in lib.handlers:
        if handler not in handlers:
            lib.removeHandler(handler)
            handler.close()
    lib.setLevel(level)


def _record(msg: str, **extra) -> logging.LogRecord:
    return get_logger("firepilot.executor").makeRecord(
        "firepilot.executor", logging.WARNING, __file__, 1, msg, (), None, extra=extra
    )


class TestContextFormatter:
    def test_appends_extra_fields(self) -> None:
        line = ContextFormatter().format(_record("VM state transition", vm_id="web-1", new_state="running"))
        assert line.startswith("WARNING [")
        assert "firepilot.executor - VM state transition" in line
        assert line.endswith("vm_id=web-1 new_state=running")

    def test_plain_record_unchanged(self) -> None:
        line = ContextFormatter().format(_record("Firecracker spawned"))
        assert line.endswith("firepilot.executor - Firecracker spawned")

    def test_output_field_not_repeated(self) -> None:
        line = ContextFormatter().format(
            _record("[firecracker stderr] boom", context_id="vm1", output="boom")
        )
        assert line.endswith("[firecracker stderr] boom context_id=vm1")


class TestConfigureLogging:
    def test_null_handler_attached(self) -> None:
        lib = logging.getLogger(LIBRARY_LOGGER_NAME)
        assert any(isinstance(h, logging.NullHandler) for h in lib.handlers)

    def test_idempotent(self, lib_logger: logging.Logger) -> None:
        configure_logging(level="DEBUG")
        configure_logging(level="DEBUG")
        added = [h for h in lib_logger.handlers if isinstance(h, _logging._NonBlockingHandler)]
        assert len(added) == 1
        assert lib_logger.level == logging.DEBUG

    def test_quiet_wins(self, lib_logger: logging.Logger) -> None:
        configure_logging(level="DEBUG", quiet=True)
        assert lib_logger.level == logging.ERROR


@pytest.mark.parametrize(
    ("value", "expected"),
    [("debug", logging.DEBUG), (" WARNING ", logging.WARNING), ("", None), ("verbose", None), ("NOTSET", None)],
)
def test_level_from_env(monkeypatch: pytest.MonkeyPatch, value: str, expected: int | None) -> None:
    monkeypatch.setenv("FIREPILOT_LOG_LEVEL", value)
    assert _logging._level_from_env() == expected
