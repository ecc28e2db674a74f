"""Centralized logging for cloexec-race.

The library root logger gets a NullHandler; only the CLI installs a real
handler, via configure_logging().  CLOEXEC_RACE_LOG_LEVEL sets the level for
library users who never call it.

Two threads log during an attempt: the asyncio main line (container start,
introspection) and the descriptor generator.  Each CLI line names the attempt
it belongs to, plus the thread when it is not the main one:

    INFO [2026-02-25 10:02:54] cloexec_race.race (attempt-3) - Attempt 3 clean
    DEBUG [2026-02-25 10:02:54] cloexec_race.fd_generator (attempt-3 @ fd-generator-attempt-3) - ...

Records go through a bounded queue drained by a listener thread, so the
generator never blocks on a slow terminal while the fork it races against
is in flight.  When the queue is full, records are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue
import threading

import click

LIBRARY_LOGGER_NAME: str = "cloexec_race"
LOG_LEVEL_ENV_VAR: str = "CLOEXEC_RACE_LOG_LEVEL"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level_value = logging.getLevelNamesMapping().get(os.environ.get(LOG_LEVEL_ENV_VAR, "").strip().upper())
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s%(origin)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# One attempt produces a few dozen records at DEBUG; this absorbs many attempts of backlog
_QUEUE_CAPACITY = 4096


def _origin(record: logging.LogRecord) -> str:
    """Suffix such as " (attempt-3 @ fd-generator-attempt-3)"; empty for untagged main-thread records."""
    parts: list[str] = []
    context_id = getattr(record, "context_id", None)
    if context_id:
        parts.append(str(context_id))
    if record.threadName and record.threadName != threading.main_thread().name:
        parts.append(record.threadName)
    return f" ({' @ '.join(parts)})" if parts else ""


class AttemptFormatter(logging.Formatter):
    """Formatter that tags each line with its attempt and originating thread."""

    def __init__(self) -> None:
        super().__init__(fmt=_FMT, datefmt=_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        record.origin = _origin(record)
        return super().format(record)


class _ClickHandler(logging.Handler):
    """Writes formatted records to stderr via click.echo with dim styling.

    Runs on the QueueListener's thread, never on the caller's.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = AttemptFormatter()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass  # stderr full, drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler; enqueueing never blocks the generator thread."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: formatting happens on the listener, the record itself is enough
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger under the cloexec_race hierarchy; modules pass __name__."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Install the CLI handler (once) and set the library log level.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides the env var.
        quiet: Only errors; takes precedence over level. The verdict is
            printed with click.echo and is not affected.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
