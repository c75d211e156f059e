"""
api/routes/admin.py -- Session and access-log administration.

Routes (mounted under API_ROOT; all require a role in ADMIN_ROLES):
  GET  /admin/sessions                     -- active refresh-token sessions
  POST /admin/sessions/{id}/revoke         -- terminate one session
  POST /admin/users/{id}/revoke-sessions   -- terminate every session of a user
  GET  /admin/access-log                   -- most recent login events
  POST /users/{id}/reset-password          -- set a user's password

Revoking a session stops further refreshes; access tokens already minted for
it stay valid until their 15-minute expiry.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    AccessLogRow,
    MessageResponse,
    ResetPasswordRequest,
    ResetPasswordResponse,
    RevokedCountResponse,
    SessionRow,
    UserResponse,
)
from auth.authority import SessionAuthority
from auth.dependencies import require_admin
from auth.errors import UserNotFound
from auth.models import User

router = APIRouter()


@router.get("/admin/sessions", response_model=list[SessionRow])
def list_sessions(request: Request, current_user: User = Depends(require_admin)) -> list[SessionRow]:
    """List non-revoked, non-expired refresh-token sessions, newest first."""
    authority: SessionAuthority = request.app.state.authority
    return [SessionRow.from_record(token, user) for token, user in authority.list_sessions()]


@router.post("/admin/sessions/{session_id}/revoke", response_model=MessageResponse)
def revoke_session(
    request: Request,
    session_id: str,
    current_user: User = Depends(require_admin),
) -> MessageResponse:
    """Revoke one session. Revoking an unknown or already-terminal session is a no-op."""
    authority: SessionAuthority = request.app.state.authority
    authority.revoke_session(session_id)
    return MessageResponse(message="Session revoked")


@router.post("/admin/users/{user_id}/revoke-sessions", response_model=RevokedCountResponse)
def revoke_user_sessions(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_admin),
) -> RevokedCountResponse:
    """Blanket revocation used on account lockout."""
    authority: SessionAuthority = request.app.state.authority
    if authority.get_user(user_id) is None:
        raise UserNotFound()
    revoked = authority.revoke_all_sessions(user_id)
    return RevokedCountResponse(message="Sessions revoked", revoked=revoked)


@router.get("/admin/access-log", response_model=list[AccessLogRow])
def access_log(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    current_user: User = Depends(require_admin),
) -> list[AccessLogRow]:
    """Return the most recent login events with the matching user, if any."""
    authority: SessionAuthority = request.app.state.authority
    return [AccessLogRow.from_event(event, user) for event, user in authority.access_log(limit)]


@router.post("/users/{user_id}/reset-password", response_model=ResetPasswordResponse)
def reset_password(
    request: Request,
    user_id: str,
    body: ResetPasswordRequest,
    current_user: User = Depends(require_admin),
) -> ResetPasswordResponse:
    """Set a new bcrypt password for any user. 404 if the user does not exist."""
    authority: SessionAuthority = request.app.state.authority
    user = authority.reset_password(user_id, body.new_password)
    return ResetPasswordResponse(message="Password reset successfully", user=UserResponse.from_user(user))
