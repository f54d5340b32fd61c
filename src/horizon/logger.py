"""Structured logging for a single run.

One :class:`Logger` is built at process entry by :func:`configure_logging`
and handed to every component. Each record runs through a structlog
processor chain and is then fanned out to two sinks:

* a JSON-lines file (one self-contained object per line), and
* a single colored console line on stderr.

A failing file sink never takes the run down: the logger drops to
console-only output and says so once.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any

import structlog
from structlog.processors import CallsiteParameter


class Level(enum.IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARN = logging.WARNING
    ERROR = logging.ERROR
    FATAL = logging.CRITICAL

    @classmethod
    def parse(cls, value: str | int | Level) -> Level:
        if isinstance(value, Level):
            return value
        if isinstance(value, int):
            return cls(value)
        name = value.strip().upper()
        name = {"WARNING": "WARN", "CRITICAL": "FATAL"}.get(name, name)
        try:
            return cls[name]
        except KeyError:
            raise ValueError(f"Unknown log level: {value!r}") from None


# structlog's filtering bound logger proxies to these method names
_METHOD_FOR_LEVEL = {
    Level.DEBUG: "debug",
    Level.INFO: "info",
    Level.WARN: "warning",
    Level.ERROR: "error",
    Level.FATAL: "critical",
}
_LEVEL_FOR_METHOD = {
    "debug": "DEBUG",
    "info": "INFO",
    "warning": "WARN",
    "warn": "WARN",
    "error": "ERROR",
    "exception": "ERROR",
    "critical": "FATAL",
    "fatal": "FATAL",
}

_CORE_FIELDS = ("timestamp", "level", "operation", "source", "message")

_LEVEL_STYLES = {
    "DEBUG": structlog.dev.CYAN,
    "INFO": structlog.dev.BLUE,
    "WARN": structlog.dev.YELLOW,
    "ERROR": structlog.dev.RED,
    "FATAL": structlog.dev.MAGENTA,
}

# Set on the downgrade notice so it is written even below min_level.
_FORCE_KEY = "_force"


@dataclass(frozen=True)
class LogConfig:
    min_level: Level = Level.INFO
    log_dir: Path = Path("logs")
    log_file: str = "horizon.log"
    enable_file: bool = True
    enable_console: bool = True

    @property
    def sink_path(self) -> Path:
        return self.log_dir / self.log_file


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def _add_level(_logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict["level"] = _LEVEL_FOR_METHOD.get(method_name, "INFO")
    return event_dict


class _MonotonicTimeStamper:
    """ISO-8601 UTC timestamps that never go backwards within a run."""

    def __init__(self) -> None:
        self._last: datetime | None = None

    def __call__(self, _logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        now = datetime.now(UTC)
        if self._last is not None and now < self._last:
            now = self._last
        self._last = now
        event_dict["timestamp"] = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return event_dict


def _shape_record(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Put the core fields first, in wire order; extras follow."""
    filename = event_dict.pop("filename", None) or "unknown"
    lineno = event_dict.pop("lineno", None) or 0
    record: dict[str, Any] = {
        "timestamp": event_dict.pop("timestamp"),
        "level": event_dict.pop("level"),
        "operation": str(event_dict.pop("operation", "") or "general"),
        "source": f"{filename}:{lineno}",
        "message": str(event_dict.pop("message", "") or "(no message)"),
    }
    for key, value in event_dict.items():
        if key not in record:
            record[key] = value
    return record


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class _TeeSink:
    """The structlog "logger" at the end of the chain.

    Receives the shaped record as keyword arguments and writes it to the
    file and console sinks that are enabled and accept its level.
    """

    def __init__(
        self,
        config: LogConfig,
        stream: IO[str],
        on_downgrade: Callable[[str], None],
    ) -> None:
        self._min_level = config.min_level
        self._path = config.sink_path
        self._stream = stream
        self._console_enabled = config.enable_console
        self._file: IO[str] | None = None
        self._on_downgrade = on_downgrade
        self._pending_downgrade: str | None = None
        self._json = structlog.processors.JSONRenderer()
        colors = bool(getattr(stream, "isatty", lambda: False)())
        self._console = structlog.dev.ConsoleRenderer(
            colors=colors,
            # ConsoleRenderer mutates the mapping it is given
            level_styles=dict(_LEVEL_STYLES) if colors else dict.fromkeys(_LEVEL_STYLES, ""),
            event_key="message",
            timestamp_key="timestamp",
            sort_keys=False,
        )
        if config.enable_file:
            self._open()

    @property
    def file_enabled(self) -> bool:
        return self._file is not None

    @property
    def console_enabled(self) -> bool:
        return self._console_enabled

    def _open(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self._path.open("a", encoding="utf-8")
        except OSError as exc:
            self._downgrade(f"Failed to open log file {self._path}: {exc}")

    def _accepts(self, level: Level, forced: bool) -> bool:
        return forced or level is Level.FATAL or level >= self._min_level

    def _write(self, **record: Any) -> None:
        forced = bool(record.pop(_FORCE_KEY, False))
        level = Level[record["level"]]
        if not self._accepts(level, forced):
            return
        if self._file is not None:
            self._write_file(self._json(None, "", dict(record)))
        if self._console_enabled:
            self._write_console(record)
        self._flush_downgrade_notice()

    debug = info = warning = error = critical = msg = _write

    def _write_file(self, line: str) -> None:
        assert self._file is not None
        try:
            self._file.write(line + "\n")
            self._file.flush()
        except OSError as exc:
            self._downgrade(f"Failed to write to log file {self._path}: {exc}")

    def _write_console(self, record: dict[str, Any]) -> None:
        fields = dict(record)
        message = fields.pop("message")
        operation = fields.pop("operation")
        fields["message"] = f"[{operation}] {message}".replace("\r", "\\r").replace("\n", "\\n")
        if "exception" in fields:
            # keep the console projection on one line
            lines = str(fields.pop("exception")).strip().splitlines()
            fields["exc"] = lines[-1] if lines else ""
        with contextlib.suppress(OSError, ValueError):
            self._stream.write(self._console(None, "", fields) + "\n")
            self._stream.flush()

    def _downgrade(self, reason: str) -> None:
        if self._file is not None:
            with contextlib.suppress(OSError):
                self._file.close()
        self._file = None
        self._console_enabled = True
        self._pending_downgrade = reason

    def _flush_downgrade_notice(self) -> None:
        if self._pending_downgrade is None:
            return
        reason, self._pending_downgrade = self._pending_downgrade, None
        self._on_downgrade(reason)

    def close(self) -> None:
        if self._file is not None:
            with contextlib.suppress(OSError):
                self._file.flush()
                self._file.close()
            self._file = None


# ---------------------------------------------------------------------------
# Public logger
# ---------------------------------------------------------------------------


class Logger:
    """Per-run structured logger. ``emit`` and the level helpers never raise."""

    def __init__(
        self,
        config: LogConfig,
        *,
        stream: IO[str] | None = None,
        program: str = "horizon",
    ) -> None:
        self.config = config
        self.program = program
        self._closed = False
        self._sink = _TeeSink(config, stream or sys.stderr, self._report_downgrade)
        self._log = structlog.wrap_logger(
            self._sink,
            processors=[
                structlog.contextvars.merge_contextvars,
                _add_level,
                _MonotonicTimeStamper(),
                structlog.processors.CallsiteParameterAdder(
                    [CallsiteParameter.FILENAME, CallsiteParameter.LINENO],
                    additional_ignores=[__name__],
                ),
                structlog.processors.format_exc_info,
                structlog.processors.EventRenamer("message"),
                _shape_record,
            ],
            wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
            context_class=dict,
            cache_logger_on_first_use=False,
        )
        # A sink that failed while opening has a notice queued already.
        self._sink._flush_downgrade_notice()

    @property
    def file_enabled(self) -> bool:
        return self._sink.file_enabled

    def emit(self, level: Level | str, operation: str, message: str, **fields: Any) -> None:
        try:
            method = _METHOD_FOR_LEVEL[Level.parse(level)]
            getattr(self._log, method)(message, operation=operation, **fields)
        except Exception as exc:  # noqa: BLE001
            with contextlib.suppress(Exception):
                sys.__stderr__.write(f"[logging failure] {operation}: {message} ({exc})\n")

    def debug(self, operation: str, message: str, **fields: Any) -> None:
        self.emit(Level.DEBUG, operation, message, **fields)

    def info(self, operation: str, message: str, **fields: Any) -> None:
        self.emit(Level.INFO, operation, message, **fields)

    def warning(self, operation: str, message: str, **fields: Any) -> None:
        self.emit(Level.WARN, operation, message, **fields)

    def error(self, operation: str, message: str, **fields: Any) -> None:
        self.emit(Level.ERROR, operation, message, **fields)

    def fatal(self, operation: str, message: str, **fields: Any) -> None:
        self.emit(Level.FATAL, operation, message, **fields)

    def _report_downgrade(self, reason: str) -> None:
        self.emit(
            Level.WARN,
            "logging",
            f"{reason}; continuing with console output only",
            **{_FORCE_KEY: True},
        )

    def close(self) -> None:
        """Write the session-end marker, then flush and close the file sink."""
        if self._closed:
            return
        self.info("session_end", f"Logging session ended for {self.program}")
        self._closed = True
        self._sink.close()


def configure_logging(
    config: LogConfig,
    *,
    stream: IO[str] | None = None,
    program: str = "horizon",
) -> Logger:
    """Build the run's logger and write the session-start marker."""
    logger = Logger(config, stream=stream, program=program)
    logger.info("session_start", f"Logging session started for {program}")
    return logger


def install_excepthook(logger: Logger) -> None:
    """Send uncaught exceptions to the run log as FATAL before exiting."""

    def _uncaught_exception_handler(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_tb: object,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
            return
        logger.fatal(
            "uncaught_exception",
            f"Uncaught exception: {exc_value}",
            exc_info=(exc_type, exc_value, exc_tb),
        )
        logger.close()
        sys.exit(1)

    sys.excepthook = _uncaught_exception_handler
