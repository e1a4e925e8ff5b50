from __future__ import annotations

import dataclasses
import json
import logging
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Any

UTC_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    parts = [f"event={event}"]
    for key, value in fields.items():
        parts.append(f"{key}={value}")
    logger.log(level, " ".join(parts))


def configure_logging(logger_name: str, default_level: str = "INFO") -> logging.Logger:
    """Attach the stdout handler, and a ``WPW_LOG_FILE`` handler if set, to the root logger.

    Every entry point calls this; handlers already present are reused, so
    calling it twice never duplicates output. ``WPW_LOG_LEVELS`` takes
    ``name=LEVEL`` pairs separated by commas.
    """
    level = _level(os.environ.get("WPW_LOG_LEVEL", default_level))
    root = logging.getLogger()
    root.setLevel(level)
    if not any(_is_stdout_handler(handler) for handler in root.handlers):
        root.addHandler(_formatted(logging.StreamHandler(sys.stdout), level))

    log_path = os.environ.get("WPW_LOG_FILE")
    if log_path and not any(_writes_to(handler, log_path) for handler in root.handlers):
        os.makedirs(os.path.dirname(os.path.abspath(log_path)), exist_ok=True)
        root.addHandler(_formatted(logging.FileHandler(log_path), level))

    for item in os.environ.get("WPW_LOG_LEVELS", "").split(","):
        name, sep, override = item.partition("=")
        if sep and name.strip():
            logging.getLogger(name.strip()).setLevel(_level(override))
    return logging.getLogger(logger_name)


def _level(name: str) -> int:
    return getattr(logging, name.strip().upper(), logging.INFO)


def _formatted(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def _is_stdout_handler(handler: logging.Handler) -> bool:
    return (
        isinstance(handler, logging.StreamHandler)
        and not isinstance(handler, logging.FileHandler)
        and handler.stream is sys.stdout
    )


def _writes_to(handler: logging.Handler, path: str) -> bool:
    return isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(path)


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True, ensure_ascii=False)


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


def format_utc(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime(UTC_FORMAT)


def utc_days_ago(days: int, now: int | None = None) -> str:
    current = now if now is not None else now_ms()
    return format_utc(current - int(timedelta(days=days).total_seconds() * 1000))


def normalize_timestamp(value: Any) -> str | None:
    """Coerce an upstream date string into ``YYYY-MM-DD HH:MM:SS`` UTC.

    Accepts the feed's native ``2024-01-02 10:00:00`` form as well as ISO 8601
    with ``T``/``Z``/offsets. Returns None for empty or unparseable input.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime(UTC_FORMAT)


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit]
