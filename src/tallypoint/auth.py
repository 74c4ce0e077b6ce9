from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Header, Request

from tallypoint.errors import Unauthorized


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def token_matches(presented: Optional[str], secret: str) -> bool:
    if presented is None or not secret:
        return False
    return secrets.compare_digest(presented.encode("utf-8"), secret.encode("utf-8"))


def require_token(request: Request, authorization: Optional[str] = Header(default=None)) -> None:
    """
    Route dependency. Missing header, wrong scheme and wrong token all fail the same way,
    before the endpoint body runs.
    """
    secret = request.app.state.settings.token
    if not token_matches(extract_bearer(authorization), secret):
        raise Unauthorized()
