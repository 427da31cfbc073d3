"""Logging setup shared by the service and the HTTP layer.

Plain text by default, one JSON object per line when ``JSON_LOGS`` is set.
Every record carries the per-request correlation id when one is active.
"""

from __future__ import annotations

import contextvars
import datetime
import json
import logging
import logging.handlers
import sys
from typing import List, Optional

# Per-request context for correlation
REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")

TEXT_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%H:%M:%S"

QUIET_LOGGERS = ("httpx", "httpcore", "charset_normalizer", "urllib3")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload = {
            "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        rid = REQUEST_ID.get("")
        if rid:
            payload["rid"] = rid
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class RequestIdFilter(logging.Filter):
    """Prefix text records with the active request id."""

    def filter(self, record: logging.LogRecord) -> bool:
        rid = REQUEST_ID.get("")
        if rid and not getattr(record, "_rid_tagged", False):
            record.msg = f"[rid={rid}] {record.msg}"
            record._rid_tagged = True
        return True


def _build_handlers(json_logs: bool, log_file: Optional[str]) -> List[logging.Handler]:
    if json_logs:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file,
                mode="a",
                encoding="utf-8",
                maxBytes=1_000_000,
                backupCount=3,
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)
        if not json_logs:
            handler.addFilter(RequestIdFilter())
    return handlers


def setup_logging(level: str = "INFO", json_logs: bool = False, log_file: Optional[str] = None) -> None:
    logging.basicConfig(level=level.upper(), handlers=_build_handlers(json_logs, log_file), force=True)
    logging.getLogger("subdivx_subtitles").setLevel(level.upper())
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
