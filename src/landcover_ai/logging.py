from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, runtime_checkable

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "landcover_ai"
_INT_FIELDS: Final[frozenset[str]] = frozenset({"latency_ms", "index", "n_classes", "status"})
_STR_FIELDS: Final[frozenset[str]] = frozenset({"label", "model_id", "code", "arch", "error"})
_EVT_PREFIX: Final[str] = "EVT "

_ANSI_RESET: Final[str] = "\x1b[0m"
_ANSI_BOLD: Final[str] = "\x1b[1m"
_ANSI_DIM: Final[str] = "\x1b[2m"
_LEVEL_STYLE: Final[tuple[tuple[int, str, str], ...]] = (
    (logging.CRITICAL, "CRIT", "\x1b[95m"),
    (logging.ERROR, "ERROR", "\x1b[91m"),
    (logging.WARNING, "WARN", "\x1b[93m"),
    (logging.INFO, "INFO", "\x1b[36m"),
    (logging.NOTSET, "DEBUG", "\x1b[90m"),
)


def _paint(text: str, *codes: str) -> str:
    return "".join(codes) + text + _ANSI_RESET


class _JsonFormatter(logging.Formatter):
    """One JSON object per line; ``EVT`` fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        doc: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        fields = _parse_evt_fields(message)
        if "event" in fields:
            doc["message"] = str(fields.pop("event"))
        doc.update(fields)
        rid = request_id_var.get()
        if rid:
            doc["request_id"] = rid
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter for interactive terminals.

    The first token of a message is treated as the event name and any
    ``key=value`` tokens after it are highlighted.
    """

    def format(self, record: logging.LogRecord) -> str:
        event, pairs, rest = _split_tokens(record.getMessage())
        out = [
            _paint(datetime.now(UTC).strftime("[%H:%M:%S]"), _ANSI_DIM),
            _level_badge(record.levelno),
        ]
        if record.name != _LOGGER_NAME:
            out.append(_paint(record.name, _ANSI_DIM))
        if event:
            out.append(_paint(event, _ANSI_BOLD, "\x1b[94m"))
        out.extend(f"{_paint(k, _ANSI_DIM)}={_value_color(k, v)}" for k, v in pairs)
        if rest:
            out.append(rest)
        line = " ".join(out)
        rid = request_id_var.get()
        if rid:
            line += " " + _paint(f"rid={rid}", _ANSI_DIM)
        if record.exc_info:
            line += "\n" + _paint(self.formatException(record.exc_info), "\x1b[91m")
        return line


def _level_badge(levelno: int) -> str:
    for threshold, name, color in _LEVEL_STYLE:
        if levelno >= threshold:
            return _paint(f"[{name}]", _ANSI_BOLD, color)
    return f"[{logging.getLevelName(levelno)}]"


def _value_color(key: str, value: str) -> str:
    if key == "label":
        return _paint(value, _ANSI_BOLD, "\x1b[92m")
    if key.endswith("_ms") or key.endswith("_seconds"):
        return _paint(value, "\x1b[95m")
    if key == "score" or _is_float_str(value):
        return _paint(value, "\x1b[92m")
    return _paint(value, "\x1b[97m")


def _split_tokens(msg: str) -> tuple[str | None, list[tuple[str, str]], str | None]:
    if msg.startswith(_EVT_PREFIX):
        fields = _parse_evt_fields(msg)
        name = str(fields.pop("event", "event"))
        return name, [(k, str(v)) for k, v in fields.items()], None
    tokens = msg.split()
    if not tokens:
        return None, [], None
    event = None if "=" in tokens[0] else tokens.pop(0)
    pairs: list[tuple[str, str]] = []
    loose: list[str] = []
    for tok in tokens:
        k, sep, v = tok.partition("=")
        if sep and k:
            pairs.append((k, v))
        else:
            loose.append(tok)
    return event, pairs, " ".join(loose) or None


def log_event(
    event: str, fields: Mapping[str, object] | None = None, level: int = logging.INFO
) -> None:
    """Emit a structured ``EVT`` line that the JSON formatter expands into keys.

    Only known fields of the expected type are kept; values are written without
    spaces so the line can be split back into tokens.
    """
    tokens = [f"event={event}"]
    for key, val in (fields or {}).items():
        if key in _INT_FIELDS and isinstance(val, int) and not isinstance(val, bool):
            tokens.append(f"{key}={val}")
        elif key in _STR_FIELDS and isinstance(val, str) and val:
            tokens.append(f"{key}={val.replace(' ', '_')}")
        elif key == "score" and isinstance(val, float):
            tokens.append(f"score={val:.6f}")
    get_logger().log(level, _EVT_PREFIX + " ".join(tokens))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith(_EVT_PREFIX):
        return {}
    parsed: dict[str, object] = {}
    for tok in msg[len(_EVT_PREFIX) :].split():
        key, sep, raw = tok.partition("=")
        if not sep or not key:
            continue
        if key in _INT_FIELDS and raw.lstrip("-").isdigit():
            parsed[key] = int(raw)
        elif key == "score" and _is_float_str(raw):
            parsed[key] = float(raw)
        else:
            parsed[key] = raw
    return parsed


def _is_float_str(s: str) -> bool:
    head, _, tail = s.partition(".")
    return bool(head or tail) and (head + tail).isdigit()


LogStyle = Literal["json", "pretty", "auto"]


def _env_level() -> int:
    name = (os.environ.get("LANDCOVER_LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Re-binds the single StreamHandler to the current ``sys.stdout`` so repeated
    calls (one per app factory) never stack handlers.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    lvl = _env_level()
    logger.setLevel(lvl)
    logger.propagate = _env_truthy("LANDCOVER_LOG_PROPAGATE")

    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(lvl)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def _env_truthy(name: str) -> bool:
    return (os.environ.get(name) or "").strip().lower() in {"1", "true", "yes", "on", "y"}


@runtime_checkable
class _HasIsatty(Protocol):
    def isatty(self) -> bool: ...


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()
    if _env_truthy("LANDCOVER_LOG_JSON"):
        return _JsonFormatter()
    stream = sys.stdout
    on_tty = isinstance(stream, _HasIsatty) and stream.isatty()
    if _env_truthy("LANDCOVER_LOG_PRETTY") or on_tty:
        return _ConsoleFormatter()
    return _JsonFormatter()
