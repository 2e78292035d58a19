from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Request

from .config import get_settings


class AuthError(RuntimeError):
    """Raised when authentication fails."""


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def enforce_auth(request: Request) -> None:
    """
    Auth guard used by mutating endpoints.

    - If AUTH_TOKEN is set, accept only that bearer token.
    - If it is not configured, authentication is effectively disabled.

    Feed reads are gated separately by the agent's secrets.
    """
    settings = get_settings()
    if not settings.auth_token:
        return

    supplied = _get_bearer_token(request)
    if supplied is None:
        raise AuthError("Missing or invalid Authorization header")
    if not hmac.compare_digest(supplied, settings.auth_token):
        raise AuthError("Invalid bearer token")
