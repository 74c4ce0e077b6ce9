from __future__ import annotations

import json
import logging
import threading
import time
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from tallypoint.trace_context import new_request_id, reset_request_id, set_request_id

access_logger = logging.getLogger("tallypoint.access")

REQUEST_ID_HEADER = "x-tallypoint-request-id"


class TimedAccessLogMiddleware(BaseHTTPMiddleware):
    """
    One access line per request on the "tallypoint.access" logger.
    When path is set, the same record is appended to that file as a JSON line.
    """
    def __init__(self, app, *, path: Optional[str] = None):
        super().__init__(app)
        self.path = path or None
        self._file_lock = threading.Lock()

    def _write_line(self, record: dict) -> None:
        if not self.path:
            return
        line = json.dumps(record) + "\n"
        try:
            with self._file_lock, open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError:
            access_logger.warning("cannot append access log to %s", self.path, exc_info=True)

    async def dispatch(self, request: Request, call_next):
        start = time.time()
        request_id = request.headers.get("x-request-id") or new_request_id()
        token = set_request_id(request_id)
        status = 500

        try:
            resp = await call_next(request)
            status = resp.status_code
            resp.headers[REQUEST_ID_HEADER] = request_id
            return resp
        finally:
            dur_ms = round((time.time() - start) * 1000.0, 3)
            access_logger.info("%s %s %d %.1fms", request.method, request.url.path, status, dur_ms)
            self._write_line({
                "ts": time.time(),
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": int(status),
                "duration_ms": dur_ms,
                "client": request.client.host if request.client else None,
                "ua": request.headers.get("user-agent"),
            })
            reset_request_id(token)
