"""
api/routes/auth.py -- Login, step-up, refresh, logout and profile endpoints.

Routes (mounted under API_ROOT, default /api):
  POST  /login                    -- password login; 200 tokens | 202 OTP challenge
  POST  /login/verify             -- exchange emailed code for tokens
  POST  /auth/refresh             -- rotate refresh_token cookie, new access token
  POST  /logout                   -- revoke refresh token, clear cookie and session
  GET   /me                       -- current user (requires auth)
  PATCH /profile                  -- update own profile (requires auth)
  POST  /profile/change-password  -- change own password (requires auth)

Security:
  [H2] POST /login and /login/verify are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] SessionAuthority.login() equalizes timing for unknown usernames.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Failures surface as AuthError and are rendered by the handler in api/main.py
  with a generic message; reasons go to the audit log only.

The refresh token never appears in a response body. It travels only in the
refresh_token cookie: HttpOnly, SameSite=Lax, Secure when SECURE_COOKIES=true,
path-scoped to API_ROOT so it is not sent to static or page routes.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import LOGIN_RATE_LIMIT, limiter
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OtpRequiredResponse,
    ProfileUpdate,
    RefreshResponse,
    UserResponse,
    VerifyOtpRequest,
)
from auth.authority import SessionAuthority
from auth.dependencies import SESSION_TOKEN_KEY, SESSION_USER_KEY, require_auth
from auth.geo import request_origin
from auth.models import IssuedTokens, LoginSuccess, OtpRequired, RequestOrigin, User

REFRESH_COOKIE = "refresh_token"

# Auth policy:
# - POST  /login, /login/verify:        public, rate limited
# - POST  /auth/refresh, /logout:       public -- authenticated by the cookie itself
# - GET   /me, PATCH /profile,
#   POST  /profile/change-password:     requires auth (require_auth)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _origin(request: Request) -> RequestOrigin:
    return request_origin(request, request.app.state.geo, request.app.state.settings.trust_proxy_headers)


def set_refresh_cookie(request: Request, response: JSONResponse, tokens: IssuedTokens) -> None:
    """Write the refresh token cookie; max_age is the token's remaining lifetime."""
    settings = request.app.state.settings
    remaining = int((tokens.refresh_expires_at - datetime.now(timezone.utc)).total_seconds())
    response.set_cookie(
        REFRESH_COOKIE,
        value=tokens.refresh_token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=max(remaining, 0),
        path=settings.api_root,
    )


def _session_response(request: Request, outcome: LoginSuccess) -> JSONResponse:
    request.session[SESSION_USER_KEY] = outcome.user.id
    request.session[SESSION_TOKEN_KEY] = outcome.tokens.refresh_token_id
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=UserResponse.from_user(outcome.user),
            access_token=outcome.tokens.access_token,
        ).model_dump(mode="json", by_alias=True),
    )
    set_refresh_cookie(request, resp, outcome.tokens)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_RATE_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/login", response_model=LoginResponse, responses={202: {"model": OtpRequiredResponse}})
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    200 with {user, accessToken} and the refresh cookie when no step-up is
    needed; 202 with {requiresEmailCode, otpId, email} when a code was mailed.
    Wrong password and unknown username are indistinguishable (401).
    """
    authority: SessionAuthority = request.app.state.authority
    outcome = authority.login(
        body.username,
        body.password,
        _origin(request),
        remember_device=body.remember_device,
        device_id=body.device_id,
    )
    if isinstance(outcome, OtpRequired):
        resp = JSONResponse(
            status_code=202,
            content=OtpRequiredResponse(otp_id=outcome.otp_id, email=outcome.email).model_dump(by_alias=True),
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _session_response(request, outcome)


@limiter.limit(LOGIN_RATE_LIMIT)  # [H2] brute-force mitigation for 6-digit codes
@router.post("/login/verify", response_model=LoginResponse)
def verify_login_code(request: Request, body: VerifyOtpRequest) -> JSONResponse:
    """Complete a step-up login. Every failure is 400 "Invalid or expired code"."""
    authority: SessionAuthority = request.app.state.authority
    outcome = authority.verify_otp(
        body.otp_id,
        body.code,
        _origin(request),
        remember_device=body.remember_device,
        device_id=body.device_id,
    )
    return _session_response(request, outcome)


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request) -> JSONResponse:
    """Rotate the refresh token cookie and return a new access token."""
    authority: SessionAuthority = request.app.state.authority
    tokens = authority.refresh(request.cookies.get(REFRESH_COOKIE), _origin(request))
    resp = JSONResponse(content=RefreshResponse(access_token=tokens.access_token).model_dump(by_alias=True))
    set_refresh_cookie(request, resp, tokens)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the refresh token (if any), clear the cookie and the server session."""
    authority: SessionAuthority = request.app.state.authority
    authority.logout(request.cookies.get(REFRESH_COOKIE), request.session.get(SESSION_TOKEN_KEY))
    request.session.clear()
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully").model_dump())
    resp.delete_cookie(REFRESH_COOKIE, path=request.app.state.settings.api_root)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/me", response_model=UserResponse, response_model_by_alias=True)
def me(current_user: User = Depends(require_auth)) -> UserResponse:
    """Return the profile of the authenticated user."""
    return UserResponse.from_user(current_user)


@router.patch("/profile", response_model=UserResponse, response_model_by_alias=True)
def update_profile(
    request: Request,
    body: ProfileUpdate,
    current_user: User = Depends(require_auth),
) -> UserResponse:
    """Update name, email, username or the always-require-code flag.

    Empty strings are treated as "unchanged", like omitted fields.
    """
    authority: SessionAuthority = request.app.state.authority
    try:
        updated = authority.update_profile(
            current_user.id,
            name=body.name or None,
            email=body.email or None,
            username=body.username or None,
            require_email_otp=body.require_email_otp,
        )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Username already taken") from exc
    return UserResponse.from_user(updated)


@router.post("/profile/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(require_auth),
) -> MessageResponse:
    """Change the caller's password. 401 if the current password is wrong."""
    authority: SessionAuthority = request.app.state.authority
    authority.change_password(current_user, body.current_password, body.new_password)
    return MessageResponse(message="Password changed successfully")
