from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Annotated

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from aptdesk.complaints.errors import AuthenticationError, AuthorizationError
from aptdesk.complaints.policy import Role


class User:
    """Simple representation of an authenticated user."""

    def __init__(self, id: str, role: Role, name: str | None = None):
        self.id = id
        self.role = role
        self.name = name or id

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles


bearer_scheme = HTTPBearer(auto_error=False)


def resolve_user_from_token(token: str | None, tokens: Mapping[str, str]) -> User | None:
    """Return the user bound to ``token`` in the configured token map.

    Entries look like ``"role:user_id"`` or ``"role:user_id:display name"``. A missing
    token yields ``None``; an unknown or malformed one is an authentication failure.
    """

    if token is None:
        return None

    entry = tokens.get(token)
    if entry is None:
        raise AuthenticationError("Invalid authentication credentials")

    role_value, _, rest = entry.partition(":")
    user_id, _, name = rest.partition(":")
    try:
        role = Role(role_value.strip().lower())
    except ValueError as exc:
        raise AuthenticationError("Invalid authentication credentials") from exc
    if not user_id.strip():
        raise AuthenticationError("Invalid authentication credentials")
    return User(id=user_id.strip(), role=role, name=name.strip() or None)


def _configured_tokens(request: Request) -> Mapping[str, str]:
    settings = getattr(request.app.state, "settings", None)
    return getattr(settings, "api_tokens", None) or {}


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> User:
    cached = getattr(request.state, "user", None)
    if isinstance(cached, User):
        return cached

    token = credentials.credentials if credentials is not None else None
    user = resolve_user_from_token(token, _configured_tokens(request))
    if user is None:
        raise AuthenticationError("Authentication credentials were not provided")
    request.state.user = user
    return user


def role_required(*roles: Role) -> Callable[[User], User]:
    """Dependency factory ensuring the current user holds one of ``roles``."""

    async def dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if not user.has_role(*roles):
            raise AuthorizationError("Insufficient permissions")
        return user

    return dependency


CurrentUser = Annotated[User, Depends(get_current_user)]
