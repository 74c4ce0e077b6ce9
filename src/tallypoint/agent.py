from __future__ import annotations

import logging
import platform
import queue
import secrets
import threading
import time
import traceback
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

REPLACEMENT_PATH = "/api/analytics/text-replacement"
ERROR_PATH = "/api/analytics/error"
USER_ACTION_PATH = "/api/analytics/user-action"


def anonymous_user_id() -> str:
    return "user_" + secrets.token_hex(5)[:9]


class TelemetryEmitter:
    """
    Fire-and-forget sender for an instrumented application.

    Payloads go onto a bounded queue drained by one daemon thread. A full queue
    drops the event and a failed POST is logged at debug level; nothing raises
    into the caller.
    """
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        user_id: Optional[str] = None,
        app_version: Optional[str] = None,
        os_name: Optional[str] = None,
        enabled: bool = True,
        max_q: int = 2000,
        timeout: float = 2.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.user_id = user_id or anonymous_user_id()
        self.app_version = app_version
        self.os_name = os_name or platform.system().lower()
        self.enabled = enabled
        self.timeout = timeout
        self.dropped = 0
        self.q: "queue.Queue[tuple]" = queue.Queue(maxsize=max_q)
        threading.Thread(target=self._worker, daemon=True, name="tallypoint-emitter").start()

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled

    def _base(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "appVersion": self.app_version, "os": self.os_name}

    def emit(self, path: str, payload: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        body = self._base()
        body.update({k: v for k, v in payload.items() if v is not None})
        try:
            self.q.put_nowait((path, body))
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def track_replacement(
        self,
        *,
        success: bool,
        method: str,
        target_app: str,
        text_length: int = 0,
        response_time_ms: Optional[int] = None,
    ) -> bool:
        return self.emit(REPLACEMENT_PATH, {
            "success": success,
            "method": method,
            "targetApp": target_app,
            "textLength": text_length,
            "responseTimeMs": response_time_ms,
        })

    def track_error(
        self,
        *,
        error_type: str,
        error_message: str,
        target_app: Optional[str] = None,
        stack_trace: Optional[str] = None,
    ) -> bool:
        return self.emit(ERROR_PATH, {
            "errorType": error_type,
            "errorMessage": error_message,
            "targetApp": target_app,
            "stackTrace": stack_trace,
        })

    def track_user_action(self, *, action_type: str, target_app: Optional[str] = None) -> bool:
        return self.emit(USER_ACTION_PATH, {"actionType": action_type, "targetApp": target_app})

    def flush(self, timeout: float = 5.0) -> bool:
        """Waits until the queue is drained; False if the deadline passed first."""
        deadline = time.time() + timeout
        while self.q.unfinished_tasks:
            if time.time() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def _worker(self):
        headers = {"Authorization": f"Bearer {self.token}"}
        while True:
            path, body = self.q.get()
            try:
                resp = requests.post(self.base_url + path, json=body, headers=headers, timeout=self.timeout)
                if resp.status_code >= 400:
                    logger.debug("telemetry rejected: %s %s", resp.status_code, path)
            except requests.RequestException as exc:
                logger.debug("telemetry send failed: %s", exc)
            finally:
                self.q.task_done()


class EmitterLogHandler(logging.Handler):
    """Forwards ERROR records (with traceback when present) as error events."""

    def __init__(self, emitter: TelemetryEmitter, level=logging.ERROR, target_app: Optional[str] = None):
        super().__init__(level=level)
        self.emitter = emitter
        self.target_app = target_app

    def emit(self, record: logging.LogRecord):
        if record.name.startswith(logger.name):
            return
        try:
            trace = None
            error_type = record.levelname
            if record.exc_info and record.exc_info[0] is not None:
                error_type = record.exc_info[0].__name__
                trace = "".join(traceback.format_exception(*record.exc_info))

            self.emitter.track_error(
                error_type=error_type,
                error_message=record.getMessage(),
                target_app=self.target_app,
                stack_trace=trace,
            )
        except Exception:
            self.handleError(record)


def install_error_forwarding(
    emitter: TelemetryEmitter,
    *,
    logger_name: Optional[str] = None,
    level: int = logging.ERROR,
    target_app: Optional[str] = None,
) -> EmitterLogHandler:
    handler = EmitterLogHandler(emitter, level=level, target_app=target_app)
    logging.getLogger(logger_name).addHandler(handler)
    return handler
