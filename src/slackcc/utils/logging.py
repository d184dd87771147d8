"""Logging setup for the bridge process and the worker subprocesses it runs.

Two rotating files are written under the log directory:

* ``slackcc.log`` receives every record from the bridge itself.
* ``worker-stderr.log`` receives the diagnostic stderr of worker
  subprocesses, tagged with the worker pid. Those records stay out of the
  main log (and the console) once logging is configured, so a chatty
  worker cannot drown out bridge events.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = [
    "WORKER_STDERR_LOGGER",
    "get_log_path",
    "get_worker_log_path",
    "log_worker_stderr",
    "setup_logging",
]

WORKER_STDERR_LOGGER = "slackcc.worker.stderr"

_DEFAULT_LOG_DIR = Path.home() / ".slackcc" / "logs"
_LOG_DIR_ENV = "SLACKCC_LOG_DIR"
_MAIN_LOG_NAME = "slackcc.log"
_WORKER_LOG_NAME = "worker-stderr.log"
_MAIN_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_WORKER_FORMAT = "%(asctime)s | pid=%(worker_pid)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "anthropic", "openai", "slack_bolt", "slack_sdk")

_log_path: Path | None = None
_worker_log_path: Path | None = None
_worker_handler: logging.Handler | None = None


class _WorkerPidDefault(logging.Filter):
    """Fill ``worker_pid`` for records logged without it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "worker_pid"):
            record.worker_pid = "?"
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure the main and worker-stderr logs; return the main log path.

    Calling again is a no-op unless ``force`` is set.
    """

    global _log_path, _worker_log_path
    if _log_path is not None and not force:
        return _log_path

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    main_path = target_dir / _MAIN_LOG_NAME
    worker_path = target_dir / _WORKER_LOG_NAME

    main_formatter = logging.Formatter(fmt=_MAIN_FORMAT, datefmt=_DATE_FORMAT)
    handlers: list[logging.Handler] = [
        _rotating_handler(main_path, level, main_formatter, max_bytes, backup_count)
    ]
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(main_formatter)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_external_loggers(level)
    _attach_worker_log(worker_path, max_bytes, backup_count)

    _log_path = main_path
    _worker_log_path = worker_path
    return main_path


def log_worker_stderr(pid: int | None, line: str) -> None:
    """Record one stderr line emitted by the worker with ``pid``."""

    logging.getLogger(WORKER_STDERR_LOGGER).info(line, extra={"worker_pid": pid if pid is not None else "?"})


def get_log_path() -> Path | None:
    """Return the main log file once logging is configured."""

    return _log_path


def get_worker_log_path() -> Path | None:
    return _worker_log_path


def _attach_worker_log(path: Path, max_bytes: int, backup_count: int) -> None:
    global _worker_handler
    worker_logger = logging.getLogger(WORKER_STDERR_LOGGER)
    if _worker_handler is not None:
        worker_logger.removeHandler(_worker_handler)
        _worker_handler.close()
    handler = _rotating_handler(
        path,
        logging.DEBUG,
        logging.Formatter(fmt=_WORKER_FORMAT, datefmt=_DATE_FORMAT),
        max_bytes,
        backup_count,
    )
    handler.addFilter(_WorkerPidDefault())
    worker_logger.addHandler(handler)
    worker_logger.setLevel(logging.INFO)
    worker_logger.propagate = False
    _worker_handler = handler


def _rotating_handler(
    path: Path,
    level: int,
    formatter: logging.Formatter,
    max_bytes: int,
    backup_count: int,
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get(_LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()


def _quiet_external_loggers(root_level: int) -> None:
    quiet_level = max(logging.WARNING, root_level)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
