"""Structured logging for the broker process.

Records from stdlib loggers and from ``structlog`` (rendered into stdlib kwargs)
are handed to a bounded queue on the emitting thread and written by a single
listener thread as one JSON object per line. stdout carries the MCP transport,
so the only sinks are a per-session file and stderr.

Every line carries the session id plus whatever correlation fields
(``invocation_id``, ``tool``, ``project_id``) are bound on the emitting context.
Credential-looking keys and token-looking strings are redacted unless the
``redact_secrets`` switch is off.
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
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Final

import structlog

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
CORRELATION_KEYS: Final[tuple[str, ...]] = ("session_id", "invocation_id", "tool", "project_id")

_SENSITIVE_KEYS: Final[re.Pattern[str]] = re.compile(
    r"(?i)secret|token|password|passwd|private_key|authorization|credential|cookie|api_key"
)
_TEXT_PATTERNS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(
            r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.DOTALL
        ),
        REDACTED,
    ),
    (
        re.compile(
            r"(?i)\b(access_token|refresh_token|id_token|token|password|secret|client_secret"
            r"|authorization)(\s*[:=]\s*)[^\s,;]+"
        ),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
    (re.compile(r"\bya29\.[A-Za-z0-9._-]{12,}"), REDACTED),
)

# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "correlation"}

_correlation: contextvars.ContextVar[Mapping[str, str]] = contextvars.ContextVar(
    "gcp_broker_log_correlation", default={}
)

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_hooked = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Settings for one structured logging installation."""

    session_id: str
    log_dir: Path | str | None = None
    logger_name: str = "gcp_broker"
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = "broker.jsonl"
    log_to_stderr: bool = True
    redact_secrets: bool = True


# ---------------------------------------------------------------------------
# Correlation context
# ---------------------------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for records emitted in this context.

    ``None`` unbinds a field for the duration of the scope; the previous
    bindings come back on exit.
    """

    bound = get_correlation_context()
    for key, value in fields.items():
        if key not in CORRELATION_KEYS:
            raise ValueError(f"unknown correlation field {key}")
        if value is None:
            bound.pop(key, None)
        elif isinstance(value, str) and value.strip():
            bound[key] = value.strip()
        else:
            raise ValueError(f"correlation field {key} must be a non-empty string")
    token = _correlation.set(bound)
    try:
        yield
    finally:
        _correlation.reset(token)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def redact_text(text: str) -> str:
    for pattern, replacement in _TEXT_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under credential-looking keys and token-looking substrings."""

    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _SENSITIVE_KEYS.search(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _no_redaction(value: JSONValue) -> JSONValue:
    return value


# ---------------------------------------------------------------------------
# Handlers and formatting
# ---------------------------------------------------------------------------


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_to_json(item) for item in value]
        return items if isinstance(value, (list, tuple)) else sorted(items, key=repr)
    return str(value) if isinstance(value, Path) else repr(value)


class _BoundedQueueHandler(logging.handlers.QueueHandler):
    """Never blocks the caller; records that do not fit are counted and dropped."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Correlation is read here, on the emitting thread.
        record.correlation = get_correlation_context()
        return super().prepare(record)  # type: ignore[no-any-return]

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, *, session_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._session_id = session_id
        self._redact = redactor

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": self._text(record.getMessage()),
            "session_id": self._session_id,
        }
        line.update(getattr(record, "correlation", None) or {})

        extra = {
            key: _to_json(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        if extra:
            line["fields"] = self._redact(extra)
        if record.exc_info:
            line["exception"] = self._text(self.formatException(record.exc_info))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _text(self, text: str) -> str:
        redacted = self._redact(text)
        return redacted if isinstance(redacted, str) else json.dumps(redacted)


class StructuredLoggingHandle:
    """An installed logging pipeline; ``shutdown`` drains it and detaches it."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        log_path: Path | None,
        queue_handler: _BoundedQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            pending: queue.Queue[logging.LogRecord] = self._queue_handler.queue  # type: ignore[assignment]
            give_up_at = time.monotonic() + timeout_seconds
            while pending.unfinished_tasks and time.monotonic() < give_up_at:
                time.sleep(0.005)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.flush()
                sink.close()
            self._closed = True


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------


def configure_structlog() -> None:
    """Send ``structlog`` events through stdlib logging and thus through the queue."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Install the pipeline on ``config.logger_name``, replacing any earlier one."""

    global _active, _atexit_hooked

    session_id = _non_empty(config.session_id, "session_id")
    logger_name = _non_empty(config.logger_name, "logger_name")
    filename = _non_empty(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if not isinstance(config.queue_size, int) or config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level_number(config.level)

    shutdown_logging()

    log_path: Path | None = None
    sinks: list[logging.Handler] = []
    if config.log_dir:
        log_path = Path(config.log_dir) / session_id / filename
        log_path.parent.mkdir(parents=True, exist_ok=True)
        sinks.append(logging.FileHandler(log_path, encoding="utf-8"))
    if config.log_to_stderr:
        sinks.append(logging.StreamHandler(sys.stderr))
    if not sinks:
        sinks.append(logging.NullHandler())

    formatter = _JsonLinesFormatter(
        session_id=session_id,
        redactor=default_log_redactor if config.redact_secrets else _no_redaction,
    )
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    queue_handler = _BoundedQueueHandler(queue.Queue(maxsize=config.queue_size))
    listener = logging.handlers.QueueListener(
        queue_handler.queue, *sinks, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    with _active_lock:
        _active = handle
        if not _atexit_hooked:
            atexit.register(shutdown_logging)
            _atexit_hooked = True
    return handle


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    session_id: str,
    log_dir: Path | str | None = None,
) -> StructuredLoggingHandle:
    """Install logging from an ``[observability]`` config section.

    ``log_dir`` overrides the configured directory; an empty configured
    directory disables the file sink.
    """

    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    directory = log_dir if log_dir is not None else section.get("log_dir")
    return setup_structured_logging(
        LoggingConfig(
            session_id=session_id,
            log_dir=directory if isinstance(directory, (str, Path)) and directory else None,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stderr=bool(section.get("log_to_stderr", True)),
            redact_secrets=bool(section.get("redact_secrets", True)),
        )
    )


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def shutdown_logging(handle: StructuredLoggingHandle | None = None) -> None:
    global _active

    with _active_lock:
        target = handle if handle is not None else _active
        if target is _active:
            _active = None
    if target is not None:
        target.shutdown()


def _non_empty(value: object, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} must be a non-empty string")
    return value.strip()


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {level!r}")
    return resolved


__all__ = [
    "CORRELATION_KEYS",
    "REDACTED",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
