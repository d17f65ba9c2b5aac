"""Resolve bearer tokens into users before requests reach the routers."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from aptdesk.complaints.errors import AuthenticationError
from aptdesk.dependencies.auth import resolve_user_from_token


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"success": False, "message": message, "code": AuthenticationError.code},
    )


class RBACMiddleware(BaseHTTPMiddleware):
    """Populate the request state with the authenticated user, if any."""

    def __init__(self, app: ASGIApp, tokens: Mapping[str, str] | None = None) -> None:
        super().__init__(app)
        self._tokens = dict(tokens or {})

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        authorization = request.headers.get("Authorization")
        token: str | None = None

        if authorization:
            scheme, _, credentials = authorization.partition(" ")
            if scheme.lower() != "bearer":
                return _unauthorized("Invalid authentication credentials")
            token = credentials.strip() or None

        try:
            user = resolve_user_from_token(token, self._tokens)
        except AuthenticationError as exc:
            return _unauthorized(exc.message)

        request.state.user = user
        return await call_next(request)
