"""Bearer-token checks shared by the cron trigger and the admin routes."""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Request


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def token_matches(request: Request, expected: str) -> bool:
    """Constant-time comparison of the request's bearer token against ``expected``."""
    provided = bearer_token(request)
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
