from __future__ import annotations

import contextvars
import logging
import sys
import uuid
from typing import Optional

REQUEST_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s]: %(message)s"


def new_request_id() -> str:
    return uuid.uuid4().hex


def set_request_id(request_id: str) -> contextvars.Token:
    return REQUEST_ID.set(request_id)


def reset_request_id(token: contextvars.Token) -> None:
    REQUEST_ID.reset(token)


def get_request_id() -> Optional[str]:
    return REQUEST_ID.get()


class RequestIdFilter(logging.Filter):
    """Stamps every record with the id of the request being served ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True


def configure_logging(level: str = "info") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())

    for h in root.handlers:
        if getattr(h, "_tallypoint", False):
            return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())
    handler._tallypoint = True  # type: ignore[attr-defined]
    root.addHandler(handler)
