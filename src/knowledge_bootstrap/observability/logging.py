"""
knowledge-bootstrap — structured run logging.

File: src/knowledge_bootstrap/observability/logging.py

Purpose
- Write one JSON object per line into ``<log_dir>/<session_id>/bootstrap.jsonl``
  for every bootstrap run.
- Stamp each line with the correlation fields bound on the emitting task
  (``session_id``, ``dim_id``, ``tier``).
- Mask secret-looking keys and values before anything reaches disk.

Notes
- Emitting never blocks a dimension task: records go through a bounded queue
  drained by a listener thread, and a full queue drops (and counts) records.
- Component loggers are ``structlog`` loggers. ``configure_structlog`` hands
  their events to stdlib ``logging`` so keyword fields land in ``fields``.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import sys
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

MASK: Final[str] = "***REDACTED***"
CORRELATION_KEYS: Final[tuple[str, ...]] = ("session_id", "dim_id", "tier")

_DEFAULT_LOGGER_NAME: Final[str] = "knowledge_bootstrap"
_DEFAULT_LOG_DIR: Final[str] = ".autosnippet/logs"

# Attributes every LogRecord carries; anything else was passed through ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    {*logging.makeLogRecord({}).__dict__, "message", "asctime", "taskName", "correlation"}
)

_correlation: contextvars.ContextVar[Mapping[str, str]] = contextvars.ContextVar(
    "knowledge_bootstrap_correlation", default=MappingProxyType({})
)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


class _SecretMasker:
    """Masks values under sensitive keys and secret-shaped substrings."""

    KEY_TERMS: Final[tuple[str, ...]] = (
        "secret",
        "token",
        "password",
        "passphrase",
        "api_key",
        "apikey",
        "authorization",
        "credential",
        "cookie",
        "private_key",
    )
    ASSIGNMENT: Final[re.Pattern[str]] = re.compile(
        r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
    )
    BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
    PROVIDER_KEY: Final[re.Pattern[str]] = re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b")

    def __call__(self, value: JSONValue) -> JSONValue:
        if isinstance(value, str):
            return self.mask_text(value)
        if isinstance(value, list):
            return [self(item) for item in value]
        if isinstance(value, dict):
            return {
                key: MASK if self.is_sensitive_key(key) else self(item)
                for key, item in value.items()
            }
        return value

    def is_sensitive_key(self, key: str) -> bool:
        lowered = key.lower()
        return any(term in lowered for term in self.KEY_TERMS)

    def mask_text(self, text: str) -> str:
        text = self.ASSIGNMENT.sub(lambda m: f"{m.group(1)}{m.group(2)}{MASK}", text)
        text = self.BEARER.sub(f"Bearer {MASK}", text)
        return self.PROVIDER_KEY.sub(MASK, text)


default_log_redactor: LogRedactor = _SecretMasker()


def _keep_secrets(value: JSONValue) -> JSONValue:
    return value


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


def set_correlation_fields(**fields: str | int | None) -> contextvars.Token[Mapping[str, str]]:
    """Bind (or, with ``None``, unbind) correlation fields; returns a reset token."""

    merged = dict(_correlation.get())
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
            continue
        text = str(value).strip()
        if not text:
            raise ValueError(f"correlation value for {key!r} must not be empty")
        merged[key] = text
    return _correlation.set(MappingProxyType(merged))


def reset_correlation_fields(token: contextvars.Token[Mapping[str, str]]) -> None:
    _correlation.reset(token)


@contextmanager
def correlation_scope(**fields: str | int | None) -> Iterator[None]:
    """Bind correlation fields for the duration of the block.

    Each asyncio task runs in a copy of its parent's context, so fields bound
    inside one dimension task never leak into a sibling.
    """

    token = set_correlation_fields(**fields)
    try:
        yield
    finally:
        reset_correlation_fields(token)


# ---------------------------------------------------------------------------
# Record formatting
# ---------------------------------------------------------------------------


def _jsonable(value: object) -> JSONValue:
    match value:
        case None | bool() | int() | str():
            return value
        case float():
            return value if math.isfinite(value) else MASK
        case datetime():
            aware = value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
            return aware.isoformat(timespec="microseconds").replace("+00:00", "Z")
        case Path():
            return str(value)
        case bytes():
            return value.decode("utf-8", errors="replace")
        case Mapping():
            return {str(key): _jsonable(item) for key, item in value.items()}
        case list() | tuple():
            return [_jsonable(item) for item in value]
        case set() | frozenset():
            return sorted((_jsonable(item) for item in value), key=repr)
        case _:
            return repr(value)


def _as_text(value: JSONValue) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, *, redactor: LogRedactor, session_id: str) -> None:
        super().__init__()
        self._redact = redactor
        self._session_id = session_id

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        line: dict[str, JSONValue] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": _as_text(self._redact(record.getMessage())),
        }
        line.update(sorted(self._correlation_for(record).items()))

        extras = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES
            and key not in CORRELATION_KEYS
            and not key.startswith("_")
        }
        if extras:
            line["fields"] = self._redact(extras)
        if record.exc_info is not None:
            line["exception"] = _as_text(self._redact(self.formatException(record.exc_info)))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _correlation_for(self, record: logging.LogRecord) -> dict[str, str]:
        fields = {"session_id": self._session_id}
        captured = getattr(record, "correlation", None)
        if isinstance(captured, Mapping):
            fields.update({str(key): str(value) for key, value in captured.items()})
        for key in CORRELATION_KEYS:
            explicit = getattr(record, key, None)
            if isinstance(explicit, (str, int)) and not isinstance(explicit, bool):
                text = str(explicit).strip()
                if text:
                    fields[key] = text
        return fields


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Snapshots correlation on the emitting task and never blocks on a full queue."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        correlation = get_correlation_context()
        if correlation:
            record.correlation = correlation
        prepared: logging.LogRecord = super().prepare(record)
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


# ---------------------------------------------------------------------------
# Setup and lifecycle
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    session_id: str
    base_log_dir: Path | str = Path(_DEFAULT_LOG_DIR)
    logger_name: str = _DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = "bootstrap.jsonl"
    log_to_stdout: bool = False
    redactor: LogRedactor | None = None


@dataclass(slots=True, eq=False)
class StructuredLoggingHandle:
    """An installed logging pipeline for one session."""

    logger: logging.Logger
    session_id: str
    log_path: Path
    _queue: queue.Queue[logging.LogRecord]
    _queue_handler: _DroppingQueueHandler
    _sinks: tuple[logging.Handler, ...]
    _listener: logging.handlers.QueueListener
    _closed: bool = False
    _close_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.flush()
                sink.close()
            self._closed = True


class _ActiveHandle:
    """Process-wide slot for the installed handle, closed at interpreter exit."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: StructuredLoggingHandle | None = None
        atexit.register(self.close)

    def get(self) -> StructuredLoggingHandle | None:
        with self._lock:
            return self._handle

    def replace(self, handle: StructuredLoggingHandle | None) -> None:
        with self._lock:
            previous, self._handle = self._handle, handle
        if previous is not None and previous is not handle:
            previous.shutdown()

    def release(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None

    def close(self) -> None:
        self.replace(None)


_active = _ActiveHandle()


def _require_text(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


def _resolve_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return level


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Install queue-backed JSON-lines logging for one session.

    Any previously installed handle is shut down first.
    """

    session_id = _require_text(config.session_id, "session_id")
    logger_name = _require_text(config.logger_name, "logger_name")
    filename = _require_text(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _resolve_level(config.level)

    _active.replace(None)

    log_path = Path(config.base_log_dir) / session_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = _JsonLinesFormatter(
        redactor=config.redactor or default_log_redactor, session_id=session_id
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    handle = StructuredLoggingHandle(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        _queue=log_queue,
        _queue_handler=queue_handler,
        _sinks=tuple(sinks),
        _listener=listener,
    )
    _active.replace(handle)
    return handle


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    session_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = _DEFAULT_LOGGER_NAME,
) -> StructuredLoggingHandle:
    """Install logging from an ``[observability]`` config section and wire structlog."""

    section = observability_config or {}
    level = section.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else section.get("log_dir", _DEFAULT_LOG_DIR)

    handle = setup_structured_logging(
        LoggingConfig(
            session_id=session_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else _DEFAULT_LOG_DIR,
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(section.get("log_to_stdout", False)),
            redactor=None if section.get("redact_secrets", True) else _keep_secrets,
        )
    )
    configure_structlog()
    return handle


def configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class _StderrHandler(logging.StreamHandler):  # type: ignore[type-arg]
    """Writes to whatever ``sys.stderr`` is when a record is emitted."""

    @property  # type: ignore[override]
    def stream(self) -> object:
        return sys.stderr

    @stream.setter
    def stream(self, value: object) -> None:
        pass


def configure_console_logging(level: int | str = "INFO") -> logging.Handler:
    """Send component loggers to stderr for commands that run no session.

    Stdout stays reserved for command output, so ``--json`` payloads parse.
    """

    resolved = _resolve_level(level)
    _active.replace(None)

    logger = logging.getLogger(_DEFAULT_LOGGER_NAME)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    handler = _StderrHandler()
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    logger.setLevel(resolved)
    logger.propagate = False
    logger.addHandler(handler)

    configure_structlog()
    return handler


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    return _active.get()


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Drain and close ``handle`` (default: the active one)."""

    target = handle if handle is not None else _active.get()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    _active.release(target)


__all__ = [
    "CORRELATION_KEYS",
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "MASK",
    "StructuredLoggingHandle",
    "configure_console_logging",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
