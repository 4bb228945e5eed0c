"""
pretested-integration: JSON-lines logging for one integration invocation.

Each CLI invocation writes ``<log_dir>/<invocation_id>/pretested.jsonl``.
Records go through a bounded queue so git subprocess calls never wait on
disk I/O; a full queue drops records and counts them instead of blocking.

Correlation fields (invocation, branches, change) are bound with
:func:`correlation_scope` and copied onto every record emitted inside the
scope, including records from other threads that were started in it.
Secrets are redacted before anything reaches a sink: credential-looking keys,
``token=...`` style assignments, bearer tokens and ``user:pass@`` in URLs.
"""

from __future__ import annotations

import atexit
import contextvars
import copy
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
LOG_FILENAME: Final[str] = "pretested.jsonl"
ROOT_LOGGER_NAME: Final[str] = "pretested_integration"
DEFAULT_QUEUE_SIZE: Final[int] = 4096

CORRELATION_FIELDS: Final[tuple[str, ...]] = (
    "invocation_id",
    "integration_branch",
    "topic_branch",
    "change_id",
)

_SECRET_KEY_RE: Final[re.Pattern[str]] = re.compile(
    r"(?i)secret|token|passw(or)?d|passphrase|api_?key|authorization|credential|cookie|private_key"
)
_SECRET_PATTERNS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(r"(?i)\b(api[_-]?key|token|password|secret|authorization)(\s*[:=]\s*)[^\s,;]+"),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
    (re.compile(r"\b([A-Za-z][A-Za-z0-9+.-]*://)[^/@\s]+@"), rf"\1{REDACTED}@"),
)

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None))
) | {"message", "asctime", "correlation"}

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "pretested_correlation", default=()
)

_TRACEBACK_FORMATTER: Final[logging.Formatter] = logging.Formatter()

_active_lock = threading.Lock()
_active: LogSession | None = None
_atexit_registered = False


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for the duration of the block.

    A ``None`` value unbinds the field inside the block.
    """
    bound = get_correlation_context()
    for key, value in fields.items():
        if key not in CORRELATION_FIELDS:
            raise ValueError(f"unknown correlation field {key!r}")
        if value is None:
            bound.pop(key, None)
        elif isinstance(value, str) and value.strip():
            bound[key] = value.strip()
        else:
            raise ValueError(f"correlation field {key!r} must be a non-empty string")
    token = _correlation.set(tuple(bound.items()))
    try:
        yield
    finally:
        _correlation.reset(token)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Redact secret-looking keys at any depth and secrets embedded in strings."""
    if isinstance(value, str):
        for pattern, replacement in _SECRET_PATTERNS:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _SECRET_KEY_RE.search(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _no_redaction(value: JSONValue) -> JSONValue:
    return value


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Capture correlation on the emitting thread; drop instead of blocking."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self.dropped = 0
        self._drop_lock = threading.Lock()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The base class folds the traceback into msg; keep it as exc_text instead.
        prepared = copy.copy(record)
        prepared.correlation = get_correlation_context()
        prepared.msg = record.getMessage()
        prepared.args = None
        if record.exc_info and not prepared.exc_text:
            prepared.exc_text = _TRACEBACK_FORMATTER.formatException(record.exc_info)
        prepared.exc_info = None
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._drop_lock:
                self.dropped += 1


class JsonLinesFormatter(logging.Formatter):
    """One sorted, compact JSON object per record."""

    def __init__(self, invocation_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._invocation_id = invocation_id
        self._redact = redactor

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, JSONValue] = {
            "timestamp": _utc_timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "invocation_id": self._invocation_id,
        }
        correlation = getattr(record, "correlation", None)
        if isinstance(correlation, Mapping):
            payload.update({k: v for k, v in correlation.items() if isinstance(v, str)})
        payload["message"] = record.getMessage()
        extras = {
            key: _to_json(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        if extras:
            payload["fields"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exception"] = record.exc_text
        redacted = self._redact(payload)
        return json.dumps(redacted, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class LogSession:
    """An active logging setup; call :meth:`shutdown` to flush and close sinks."""

    def __init__(
        self,
        logger: logging.Logger,
        log_path: Path,
        handler: _CorrelatingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._handler = handler
        self._listener = listener
        self._sinks = sinks
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def dropped_records(self) -> int:
        return self._handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            deadline = time.monotonic() + timeout_seconds
            while self._handler.queue.unfinished_tasks and time.monotonic() < deadline:
                time.sleep(0.01)
            self._listener.stop()
            self.logger.removeHandler(self._handler)
            self._handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def setup_logging(
    observability: Mapping[str, object] | None = None,
    *,
    invocation_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER_NAME,
    queue_size: int = DEFAULT_QUEUE_SIZE,
) -> LogSession:
    """Start logging for one invocation from an ``[observability]`` section.

    Recognised keys are ``log_level``, ``log_dir``, ``log_to_stderr`` and
    ``redact_secrets``. Any session started earlier is shut down first.
    """
    global _active, _atexit_registered

    settings = dict(observability or {})
    if not invocation_id or not invocation_id.strip():
        raise ValueError("invocation_id must not be empty")
    if queue_size <= 0:
        raise ValueError("queue_size must be a positive integer")
    level = _parse_level(settings.get("log_level", "INFO"))
    base_dir = Path(log_dir if log_dir is not None else str(settings.get("log_dir", "logs")))

    shutdown_logging()

    log_path = base_dir / invocation_id.strip() / LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    redactor = default_log_redactor if settings.get("redact_secrets", True) else _no_redaction
    formatter = JsonLinesFormatter(invocation_id.strip(), redactor)

    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if settings.get("log_to_stderr", False):
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=queue_size)
    handler = _CorrelatingQueueHandler(log_queue)
    listener = logging.handlers.QueueListener(log_queue, *sinks)
    listener.start()
    logger.addHandler(handler)

    session = LogSession(logger, log_path, handler, listener, tuple(sinks))
    with _active_lock:
        _active = session
    if not _atexit_registered:
        atexit.register(shutdown_logging)
        _atexit_registered = True
    return session


def shutdown_logging(session: LogSession | None = None) -> None:
    """Shut down ``session`` or, by default, the active one. Safe to repeat."""
    global _active
    with _active_lock:
        target = session if session is not None else _active
        if target is _active:
            _active = None
    if target is not None:
        target.shutdown()


def _parse_level(value: object) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return level


def _utc_timestamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_to_json(item) for item in value]
        return sorted(items, key=str) if isinstance(value, (set, frozenset)) else items
    if isinstance(value, (Path, datetime)):
        return str(value)
    return repr(value)


__all__ = [
    "CORRELATION_FIELDS",
    "JSONValue",
    "JsonLinesFormatter",
    "LogRedactor",
    "LogSession",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "setup_logging",
    "shutdown_logging",
]
