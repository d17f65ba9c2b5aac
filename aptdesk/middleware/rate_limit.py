"""Per-client request throttling built on slowapi."""

from __future__ import annotations

import logging

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from aptdesk.core.config import Settings

logger = logging.getLogger(__name__)


def rate_limit_key(request: Request) -> str:
    """Throttle authenticated callers per user and anonymous ones per address."""

    user = getattr(request.state, "user", None)
    user_id = getattr(user, "id", None)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_remote_address(request)}"


def build_limiter(settings: Settings) -> Limiter:
    logger.debug(
        "Configuring rate limiter",
        extra={"enabled": settings.rate_limit_enabled, "default": settings.rate_limit_default},
    )
    return Limiter(
        key_func=rate_limit_key,
        default_limits=[settings.rate_limit_default],
        storage_uri=settings.rate_limit_storage_uri,
        enabled=settings.rate_limit_enabled,
        headers_enabled=False,
    )
