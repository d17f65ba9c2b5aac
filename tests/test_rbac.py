import pytest

from aptdesk.complaints.errors import AuthenticationError, AuthorizationError
from aptdesk.complaints.policy import Role
from aptdesk.dependencies.auth import User, resolve_user_from_token, role_required

TOKENS = {
    "tok-admin": "admin:admin-1:Site Office",
    "tok-resident": "resident:resident-1",
    "tok-broken": "janitor:someone",
}


def test_resolve_user_from_token_parses_role_and_id():
    user = resolve_user_from_token("tok-admin", TOKENS)

    assert user.id == "admin-1"
    assert user.role is Role.ADMIN
    assert user.name == "Site Office"


def test_resolve_user_without_token_is_anonymous():
    assert resolve_user_from_token(None, TOKENS) is None


@pytest.mark.parametrize("token", ["unknown", "tok-broken"])
def test_resolve_user_rejects_bad_tokens(token):
    with pytest.raises(AuthenticationError):
        resolve_user_from_token(token, TOKENS)


@pytest.mark.asyncio
async def test_role_required_allows_authorized_user():
    dependency = role_required(Role.ADMIN)
    user = User("admin-1", Role.ADMIN)
    result = await dependency(user)  # type: ignore[arg-type]
    assert result.id == "admin-1"


@pytest.mark.asyncio
async def test_role_required_rejects_unauthorized_user():
    dependency = role_required(Role.ADMIN)
    user = User("resident-1", Role.RESIDENT)
    with pytest.raises(AuthorizationError) as exc:
        await dependency(user)  # type: ignore[arg-type]

    assert exc.value.status_code == 403
    assert exc.value.message == "Insufficient permissions"
