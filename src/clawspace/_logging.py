"""Centralized logging for clawspace.

The library only attaches a NullHandler to its root logger; handlers are the
application's job. ``configure_logging()`` is for CLI entry points.

CLI output format (workspace and stage come from the record's ``extra``):
    WARNING [2026-02-25 10:02:54] clawspace.orchestrator [ws1/docker] - message

Non-blocking logging:
    QueueHandler + QueueListener decouple log emission from stderr I/O so a
    slow terminal never stalls a startup run.  Records are dropped when the
    bounded queue is full.
"""

import asyncio
import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "clawspace"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# CLAWSPACE_LOG_LEVEL=DEBUG etc.
_env_level = os.environ.get("CLAWSPACE_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s%(scope)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 4096


class _WorkspaceFormatter(logging.Formatter):
    """Prefixes records that carry ``workspace_id`` (and ``stage``) extras."""

    def format(self, record: logging.LogRecord) -> str:
        workspace_id = getattr(record, "workspace_id", None)
        stage = getattr(record, "stage", None)
        if workspace_id and stage:
            record.scope = f" [{workspace_id}/{stage}]"
        elif workspace_id:
            record.scope = f" [{workspace_id}]"
        else:
            record.scope = ""
        return super().format(record)


class _ClickHandler(logging.Handler):
    """Writes records to stderr via click.echo; warnings and errors stay undimmed."""

    def __init__(self) -> None:
        super().__init__()
        self.formatter = _WorkspaceFormatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if record.levelno >= logging.ERROR:
                msg = click.style(msg, fg="red")
            elif record.levelno < logging.WARNING:
                msg = click.style(msg, dim=True)
            click.echo(msg, err=True)
        except BlockingIOError:
            pass  # stderr buffer full
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler; the listener thread owns stderr."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Done-callback for fire-and-forget tasks; a failure would otherwise go unseen."""
    if task.cancelled() or task.exception() is None:
        return
    logging.getLogger(LIBRARY_LOGGER_NAME).error(
        f"Background task {task.get_name()} failed",
        extra={"task_name": task.get_name()},
        exc_info=task.exception(),
    )


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Install the stderr handler once and set the library level.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides CLAWSPACE_LOG_LEVEL.
        quiet: Only errors; wins over ``level``.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
