# src/gateway/auth.py

import hmac

from fastapi import Request

from common.errors import AuthenticationError
from common.logging_utils import log_event


def is_authorized(authorization: str | None, token: str) -> bool:
    """True only for the exact header value `Bearer <token>`."""
    if not authorization:
        return False
    expected = f"Bearer {token}"
    return hmac.compare_digest(authorization.encode("utf-8"), expected.encode("utf-8"))


async def require_bearer_token(request: Request) -> None:
    """FastAPI dependency guarding every /api route."""
    config = request.app.state.config
    if is_authorized(request.headers.get("Authorization"), config.BEARER_TOKEN):
        return

    log_event(
        "auth_rejected",
        extra={
            "method": request.method,
            "path": request.url.path,
            "client": request.client.host if request.client else "unknown",
            "header_present": "Authorization" in request.headers,
        },
        level="warning",
    )
    raise AuthenticationError()
