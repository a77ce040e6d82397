from __future__ import annotations

import logging
from typing import Iterable, Optional
from urllib.parse import urlparse

from fastapi import Depends, Request, WebSocket
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pentrelay.base.config import get_config, is_network_exposed
from pentrelay.errors import ErrorCode, RelayError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def auth_required() -> bool:
    """Token auth applies whenever the gateway is reachable off-host, or when forced."""
    config = get_config()
    return is_network_exposed(config.api_host) or config.security.require_auth


def websocket_token(websocket: WebSocket) -> Optional[str]:
    """Token from ?token=... or an Authorization: Bearer header."""
    token = websocket.query_params.get("token")
    if token:
        return token
    auth_header = websocket.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return None


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> bool:
    if not auth_required():
        return True

    if credentials is None:
        raise RelayError(
            "Authentication token required",
            code=ErrorCode.AUTH_TOKEN_MISSING,
            details={"endpoint": str(request.url.path), "client_ip": get_client_ip(request)},
        )

    if credentials.credentials != get_config().security.api_token:
        raise RelayError(
            "Invalid authentication token",
            code=ErrorCode.AUTH_TOKEN_INVALID,
            details={"endpoint": str(request.url.path), "client_ip": get_client_ip(request)},
        )

    return True


# ---------------------------------------------------------------------------
# Origin validation
# ---------------------------------------------------------------------------

def is_origin_allowed(origin: str, allowed_patterns: Iterable[str]) -> bool:
    """
    Check if an origin matches any of the allowed patterns.

    Patterns support:
    - Exact matches: "https://dashboard.example.com"
    - Wildcard ports: "http://localhost:*"
    - Everything: "*"

    Args:
        origin: Origin header value
        allowed_patterns: Iterable of allowed origin patterns

    Returns:
        True if allowed, False otherwise
    """
    if not origin:
        return False

    parsed = urlparse(origin)
    for pattern in allowed_patterns:
        if pattern == "*" or pattern == origin:
            return True

        if pattern.endswith(":*"):
            base = urlparse(pattern[:-2])
            if parsed.scheme == base.scheme and parsed.hostname == base.hostname:
                return True

    return False
