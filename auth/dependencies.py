"""
auth/dependencies.py -- FastAPI Depends() guards consumed by every protected route.

Two principal strategies are tried in priority order:
  1. Server-side session: the signed Starlette session cookie holds "user_id"
     and "session_id", the refresh-token record that started the session. It
     is honoured only while that record's rotation chain is still live, so
     logout and admin revocation end cookie sessions too.
  2. Authorization: Bearer <access token> -- SPA and API clients.

Both converge on a user id (SessionAuthority.resolve_principal); the guard then
loads the user.

require_auth:      401 no principal, 404 user vanished, 403 account inactive.
require_role(...): require_auth plus 403 when the role is not allowed.
require_admin:     require_role over Settings.admin_roles.

Failures raise AuthError subclasses; the API layer's exception handler renders
them as {"error": message}.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.authority import SessionAuthority
from auth.errors import Forbidden, InactiveAccount, Unauthorized, UserNotFound
from auth.models import User

SESSION_USER_KEY = "user_id"
SESSION_TOKEN_KEY = "session_id"


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_user_id(request: Request) -> str | None:
    """Resolve the request's principal without loading the user. Never raises."""
    authority: SessionAuthority = request.app.state.authority
    session = request.session if "session" in request.scope else {}
    return authority.resolve_principal(
        session.get(SESSION_USER_KEY),
        session.get(SESSION_TOKEN_KEY),
        bearer_token(request),
    )


def require_auth(request: Request) -> User:
    """Require an authenticated, active user.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(require_auth)): ...
    """
    user_id = try_get_user_id(request)
    if user_id is None:
        raise Unauthorized()
    authority: SessionAuthority = request.app.state.authority
    user = authority.get_user(user_id)
    if user is None:
        raise UserNotFound()
    if not user.is_active:
        raise InactiveAccount()
    return user


def require_role(*roles: str) -> Callable[[Request], User]:
    """Build a dependency that admits only the given roles.

        @router.post("/budget/{id}/approve")
        async def approve(user: User = Depends(require_role("obispo", "secretario_financiero"))): ...
    """
    allowed = frozenset(roles)

    def dependency(request: Request) -> User:
        user = require_auth(request)
        if user.role not in allowed:
            raise Forbidden()
        return user

    return dependency


def require_admin(request: Request) -> User:
    """Admit users whose role is in Settings.admin_roles."""
    user = require_auth(request)
    if user.role not in request.app.state.settings.admin_roles:
        raise Forbidden()
    return user
