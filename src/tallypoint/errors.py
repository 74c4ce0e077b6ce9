from __future__ import annotations

from typing import Any, Dict, List, Optional


class TallypointError(Exception):
    """
    Base for errors that map onto a JSON error response.

    `message` is the public text. When `expose` is true the text passed to the
    constructor replaces it in the response; otherwise it only reaches the log.
    """
    status_code = 500
    message = "Internal server error"
    expose = True

    def __init__(self, message: Optional[str] = None, *, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message or self.message)
        self.details = details

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": str(self) if self.expose else self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(TallypointError):
    status_code = 400
    message = "Validation failed"


class Unauthorized(TallypointError):
    status_code = 401
    message = "Unauthorized"


class NotFound(TallypointError):
    status_code = 404
    message = "Not found"


class StorageError(TallypointError):
    """Raised by event stores when the backing medium is unreachable or a query fails."""
    status_code = 500
    message = "Database error"
    expose = False


def validation_details(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Flattens pydantic error dicts into {field, message} pairs."""
    out: List[Dict[str, Any]] = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        out.append({
            "field": ".".join(loc) or "body",
            "message": str(err.get("msg", "invalid value")),
        })
    return out
