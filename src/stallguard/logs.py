"""
Structured logging for stallguard.

All logging goes through structlog. Every record carries a severity tag:
INFO, WARNING, ERROR, DEBUG from the log method, or ACTION / SUCCESS for
recovery activity (emitted at INFO level).
"""

import logging
import sys
from pathlib import Path
from typing import IO, Any

import structlog

from stallguard.config import LoggingConfig
from stallguard.errors import FatalInitFailure

ACTION = "ACTION"
SUCCESS = "SUCCESS"

_METHOD_SEVERITY = {
    "debug": "DEBUG",
    "info": "INFO",
    "warning": "WARNING",
    "warn": "WARNING",
    "error": "ERROR",
    "exception": "ERROR",
    "critical": "ERROR",
}


def add_severity(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag each record with a severity, keeping an explicit ACTION/SUCCESS tag."""
    if "severity" not in event_dict:
        event_dict["severity"] = _METHOD_SEVERITY.get(method_name, method_name.upper())
    return event_dict


def log_action(logger: Any, event: str, **kw: Any) -> None:
    """Log a recovery action being applied."""
    logger.info(event, severity=ACTION, **kw)


def log_success(logger: Any, event: str, **kw: Any) -> None:
    """Log a successful recovery or a return to a healthy state."""
    logger.info(event, severity=SUCCESS, **kw)


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure structured logging for the entire application.
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_severity,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: Any
    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    # Textual and asyncio are chatty at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("textual").setLevel(logging.WARNING)


class EventLog:
    """
    Append-only JSON-lines log of supervisor events.

    One line per event, written through a dedicated structlog pipeline so
    that events never mix with console output.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._file: IO[str] | None = None
        self._logger: Any = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def open(self) -> None:
        """Open the log file for appending; failure is fatal at startup."""
        if self._file is not None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self._path, "a", encoding="utf-8")
        except OSError as exc:
            raise FatalInitFailure(f"cannot open event log {self._path}: {exc}") from exc
        self._logger = structlog.wrap_logger(
            structlog.WriteLogger(self._file),
            wrapper_class=structlog.BoundLogger,
            processors=[
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.JSONRenderer(default=str),
            ],
        )

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            self._logger = None

    def append(self, event: str, **fields: Any) -> None:
        """Append one event; a closed log drops it silently."""
        if self._logger is None:
            return
        try:
            self._logger.msg(event, **fields)
        except (OSError, ValueError) as exc:
            structlog.get_logger(__name__).error(
                "event_log_write_failed", path=str(self._path), error=str(exc)
            )

    def __enter__(self) -> "EventLog":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
