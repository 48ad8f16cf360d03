"""Logging setup for smart-import.

Every line written while an import runs carries that import's correlation id,
so the classifier, the fallback chain, the parser and the gate can be read as
one story in the log file. ``log_with_context`` attaches a dict of fields that
the JSON formatter emits under ``data`` and the plain formatter appends as
``key=value`` pairs.
"""
from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any

from smart_import.config import get_log_path, load_config

PLAIN_FORMAT = "%(asctime)s %(levelname)-7s [%(correlation_id)s] %(name)s: %(message)s"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 3
_HANDLER_MARK = "_smart_import_handler"

_correlation_id: ContextVar[str | None] = ContextVar("smart_import_correlation_id", default=None)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def get_correlation_id() -> str:
    """Id of the import in progress; one is minted when none is active."""
    cid = _correlation_id.get()
    if cid is None:
        cid = _new_id()
        _correlation_id.set(cid)
    return cid


@contextmanager
def correlation_context(cid: str | None = None) -> Generator[str, None, None]:
    token = _correlation_id.set(cid or _new_id())
    try:
        yield _correlation_id.get() or ""
    finally:
        _correlation_id.reset(token)


class CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": getattr(record, "correlation_id", "-"),
            "message": record.getMessage(),
        }
        data = getattr(record, "extra_data", None)
        if data:
            payload["data"] = data
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class PlainFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(PLAIN_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        line = super().format(record)
        data = getattr(record, "extra_data", None)
        if data:
            line += " | " + " ".join(f"{key}={value}" for key, value in data.items())
        return line


def _build_handlers(cfg: dict[str, Any]) -> list[logging.Handler]:
    log_cfg = cfg.get("logging", {}) or {}
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_cfg.get("file_enabled", True):
        log_path = get_log_path(cfg)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_path,
                maxBytes=int(log_cfg.get("max_bytes", DEFAULT_MAX_BYTES)),
                backupCount=int(log_cfg.get("backup_count", DEFAULT_BACKUP_COUNT)),
                encoding="utf-8",
            )
        )
    return handlers


def configure_logging(config: dict[str, Any] | None = None) -> None:
    """Install stream and rotating-file handlers on the root logger.

    Calling it again replaces the handlers it installed earlier instead of
    stacking duplicates; handlers added by anyone else are left alone.
    """
    cfg = config or load_config()
    log_cfg = cfg.get("logging", {}) or {}
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    formatter: logging.Formatter = StructuredFormatter() if log_cfg.get("json_format") else PlainFormatter()

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    correlation_filter = CorrelationFilter()
    for handler in _build_handlers(cfg):
        handler.setFormatter(formatter)
        handler.addFilter(correlation_filter)
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)

    # requests/urllib3 connection chatter drowns out the pipeline at DEBUG.
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))


def log_with_context(logger: logging.Logger, level: int, message: str, **fields: Any) -> None:
    """Log ``message`` with ``fields`` attached as structured data."""
    logger.log(level, message, extra={"extra_data": fields})
