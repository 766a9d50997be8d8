from __future__ import annotations

import errno
import io
import logging
import os
import re
import sys
from collections.abc import Mapping
from contextlib import AbstractContextManager
from typing import Any, TextIO, cast

import structlog
from structlog.types import Processor

TELEGRAM_TOKEN_RE = re.compile(r"bot\d+:[A-Za-z0-9_-]+")
TELEGRAM_BARE_TOKEN_RE = re.compile(r"\b\d+:[A-Za-z0-9_-]{10,}\b")
URL_USERINFO_RE = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/@\s]+@", re.IGNORECASE)
BEARER_RE = re.compile(r"(?P<prefix>bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE)

# Fields that can carry whole Bot API replies or agent error bodies.
CLIPPED_FIELDS = frozenset({"body", "description", "detail", "error"})
DEFAULT_MAX_FIELD_CHARS = 500

_log_file: TextIO | None = None
_max_field_chars = DEFAULT_MAX_FIELD_CHARS


def _truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _level_from_env(value: str | None) -> int:
    if not value:
        return logging.INFO
    level = logging.getLevelName(value.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _max_chars_from_env(value: str | None) -> int:
    if not value:
        return DEFAULT_MAX_FIELD_CHARS
    try:
        return max(0, int(value))
    except ValueError:
        return DEFAULT_MAX_FIELD_CHARS


def redact(value: str) -> str:
    """Mask bot tokens, bearer credentials and user:password in agent URLs."""
    value = TELEGRAM_TOKEN_RE.sub("bot[REDACTED]", value)
    value = TELEGRAM_BARE_TOKEN_RE.sub("[REDACTED_TOKEN]", value)
    value = URL_USERINFO_RE.sub(r"\g<scheme>[REDACTED]@", value)
    return BEARER_RE.sub(r"\g<prefix>[REDACTED]", value)


def clip(value: str, limit: int) -> str:
    if limit <= 0 or len(value) <= limit:
        return value
    return f"{value[:limit]}... [{len(value) - limit} more chars]"


def _redact_any(value: Any) -> Any:
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, (bytes, bytearray)):
        return redact(value.decode("utf-8", errors="replace"))
    if isinstance(value, Mapping):
        return {key: _redact_any(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return type(value)(_redact_any(item) for item in value)
    return value


def _redact_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    _ = logger, method_name
    return _redact_any(event_dict)


def _clip_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    _ = logger, method_name
    for key in CLIPPED_FIELDS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = clip(value, _max_field_chars)
    return event_dict


def _write_log_file(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    if _log_file is None:
        return event_dict
    try:
        line = structlog.processors.JSONRenderer(default=str)(
            logger, method_name, dict(event_dict)
        )
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        _log_file.write(line + "\n")
        _log_file.flush()
    except OSError:
        return event_dict
    return event_dict


def _add_logger_name(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    name = event_dict.pop("logger_name", None)
    if "logger" not in event_dict and isinstance(name, str) and name:
        event_dict["logger"] = name
    return event_dict


def get_logger(name: str | None = None) -> Any:
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


def bound_context(**fields: Any) -> AbstractContextManager[None]:
    """Bind fields (``session_key``, ``update_id``...) for the enclosed block."""
    return structlog.contextvars.bound_contextvars(**fields)


class SafeWriter(io.TextIOBase):
    """Stdout wrapper that goes quiet instead of raising on a closed pipe."""

    def __init__(self, stream: Any) -> None:
        self._stream = stream
        self._closed = False

    def write(self, message: str) -> int:
        if self._closed:
            return 0
        try:
            return self._stream.write(message)
        except (BrokenPipeError, ValueError):
            self._closed = True
            return 0
        except OSError as exc:
            if exc.errno == errno.EPIPE:
                self._closed = True
                return 0
            raise

    def flush(self) -> None:
        if self._closed:
            return
        try:
            self._stream.flush()
        except (BrokenPipeError, ValueError):
            self._closed = True
        except OSError as exc:
            if exc.errno != errno.EPIPE:
                raise
            self._closed = True


def _open_log_file(path: str | None) -> TextIO | None:
    global _log_file
    if _log_file is not None:
        try:
            _log_file.close()
        except OSError:
            pass
        _log_file = None
    if not path:
        return None
    try:
        return open(path, "a", encoding="utf-8")
    except OSError:
        return None


def build_processors(*, json_output: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        _add_logger_name,
    ]
    if json_output:
        processors.append(structlog.processors.format_exc_info)
    processors.extend([_clip_fields, _redact_secrets, _write_log_file])
    return processors


def setup_logging(
    *,
    debug: bool = False,
    stream: TextIO | None = None,
    cache_logger_on_first_use: bool = True,
) -> None:
    """Configure structlog for the bridge.

    Environment:
    ``PARLEY_LOG_LEVEL`` (default info, ``--debug`` forces debug),
    ``PARLEY_LOG_FORMAT`` (``console`` or ``json``), ``PARLEY_LOG_COLOR``,
    ``PARLEY_LOG_FILE`` (extra JSON lines sink) and
    ``PARLEY_LOG_MAX_FIELD_CHARS`` (clip length for reply bodies and errors,
    0 disables clipping).
    """
    global _log_file, _max_field_chars

    level = logging.DEBUG if debug else _level_from_env(os.environ.get("PARLEY_LOG_LEVEL"))
    _max_field_chars = _max_chars_from_env(os.environ.get("PARLEY_LOG_MAX_FIELD_CHARS"))

    out = stream if stream is not None else sys.stdout
    json_output = os.environ.get("PARLEY_LOG_FORMAT", "console").strip().lower() == "json"
    color = os.environ.get("PARLEY_LOG_COLOR")
    colors = out.isatty() if color is None else _truthy(color)
    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer(default=str)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colors)

    _log_file = _open_log_file(os.environ.get("PARLEY_LOG_FILE"))

    structlog.configure(
        processors=[*build_processors(json_output=json_output), cast(Processor, renderer)],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=cast(TextIO, SafeWriter(out))),
        cache_logger_on_first_use=cache_logger_on_first_use,
    )
