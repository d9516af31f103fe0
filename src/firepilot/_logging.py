"""Logging for firepilot.

The library only attaches a NullHandler to the ``firepilot`` logger.  Log
level can be raised or lowered with FIREPILOT_LOG_LEVEL; scripts that
want output call configure_logging().

Every module logs structured fields through ``extra={...}`` (vm_id,
socket_path, state, ...).  The handler installed by configure_logging()
appends them to the line:

    WARNING [2026-02-25 10:02:54] firepilot.executor - VM state transition vm_id=web-1 old_state=booting ...

Records are handed to a QueueListener thread so a slow stderr never
stalls the event loop supervising a microVM.  When the bounded queue is
full, records are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "firepilot"
LOG_LEVEL_ENV: str = "FIREPILOT_LOG_LEVEL"

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_QUEUE_CAPACITY = 4096

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}


def _level_from_env() -> int | None:
    """Level named by FIREPILOT_LOG_LEVEL, or None when unset or unknown."""
    name = os.environ.get(LOG_LEVEL_ENV, "").strip().upper()
    return logging.getLevelNamesMapping().get(name) or None


_lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_lib_logger.addHandler(logging.NullHandler())
if (_env_level := _level_from_env()) is not None:
    _lib_logger.setLevel(_env_level)


class ContextFormatter(logging.Formatter):
    """Formatter that appends ``extra`` fields as ``key=value`` pairs.

    Hypervisor output lines already carry their text in the message, so
    the duplicate ``output`` field is left out.
    """

    def __init__(self) -> None:
        super().__init__(fmt=_FMT, datefmt=_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and key != "output" and not key.startswith("_")
        ]
        if fields:
            line = f"{line} {' '.join(fields)}"
        return line


class _ClickHandler(logging.Handler):
    """Writes dimmed lines to stderr with click.echo (ANSI stripped off a TTY)."""

    def __init__(self) -> None:
        super().__init__()
        self.formatter = ContextFormatter()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass  # stderr full, drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """QueueHandler over a bounded queue drained by a listener thread."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: the listener formats the original record, extra fields included
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a firepilot module (pass ``__name__``)."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Send firepilot logs to stderr.

    Idempotent: the stderr handler is added once.  Handlers installed by
    the application are left alone.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides FIREPILOT_LOG_LEVEL.
        quiet: Only log errors. Takes precedence over level.
    """
    if not any(isinstance(h, _NonBlockingHandler) for h in _lib_logger.handlers):
        _lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        _lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        _lib_logger.setLevel(level)
