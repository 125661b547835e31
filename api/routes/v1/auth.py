"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/login                     -- password login; creates a session
  POST /api/v1/auth/register                  -- create an identity; issues tokens (no session)
  POST /api/v1/auth/refresh                   -- single-use refresh token exchange
  POST /api/v1/auth/logout                    -- end one session or all (requires auth)
  POST /api/v1/auth/forgot-password           -- always 200 (anti-enumeration)
  POST /api/v1/auth/reset-password            -- consume a reset token
  POST /api/v1/auth/change-password           -- requires auth
  GET  /api/v1/auth/verify-email/{token}      -- confirm an email address
  POST /api/v1/auth/resend-verification       -- always 200 (anti-enumeration)
  GET  /api/v1/auth/me                        -- current user (requires auth)
  GET  /api/v1/auth/sessions                  -- active sessions (requires auth)
  POST /api/v1/auth/sessions/{id}/revoke      -- requires auth, ownership checked
  POST /api/v1/auth/sessions/revoke-all       -- requires auth

Handlers are thin: they unpack the body, call the AuthManager, and shape the
response. AuthError subclasses raised by the manager are turned into the
error envelope by the exception handler in api/main.py, which also makes
InvalidCredentials and TooManyAttempts indistinguishable on the wire.

Security:
  POST /login is additionally capped per IP by slowapi (LOGIN_RATE_LIMIT).
  Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_RATE_LIMIT, limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    SessionResponse,
    UserResponse,
)
from auth.dependencies import get_current_user
from auth.models import AuthResult, User
from auth.service import AuthManager

router = APIRouter()


def _manager(request: Request) -> AuthManager:
    return request.app.state.auth_manager


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _token_response(result: AuthResult, status_code: int = 200) -> JSONResponse:
    body = AuthResponse(
        user=UserResponse.from_user(result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
        token_type=result.token_type,
        session_id=result.session_id,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(LOGIN_RATE_LIMIT)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and open a session.

    Unknown email, wrong password, inactive account, and throttled attempts
    all produce the same 401 body.
    """
    result = _manager(request).login(
        email=body.email,
        password=body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        remember_me=body.remember_me,
    )
    return _token_response(result)


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    result = _manager(request).register(
        email=body.email,
        password=body.password,
        confirm_password=body.confirm_password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role.value if body.role else None,
    )
    return _token_response(result, status_code=201)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    return _token_response(_manager(request).refresh_token(body.refresh_token))


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Request a reset link. The response is identical whether or not the email exists."""
    _manager(request).forgot_password(body.email)
    return MessageResponse(message="If the email exists, a password reset link has been sent.")


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    _manager(request).reset_password(body.token, body.password, body.confirm_password)
    return MessageResponse(message="Password has been reset. Please log in again.")


@router.get("/auth/verify-email/{token}", response_model=MessageResponse)
def verify_email(request: Request, token: str) -> MessageResponse:
    _manager(request).verify_email(token)
    return MessageResponse(message="Email verified.")


@router.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(request: Request, body: ResendVerificationRequest) -> MessageResponse:
    _manager(request).resend_verification(body.email)
    return MessageResponse(message="If the account needs verification, an email has been sent.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(current_user)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: LogoutRequest | None = None,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """End the named session, or every session of the caller when none is given."""
    _manager(request).logout(
        current_user.id,
        session_id=body.session_id if body else None,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return MessageResponse(message="Logged out.")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    _manager(request).change_password(
        current_user.id,
        body.current_password,
        body.new_password,
        body.confirm_password,
    )
    return MessageResponse(message="Password changed. Please log in again.")


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[SessionResponse]:
    return [SessionResponse.from_session(s) for s in _manager(request).list_sessions(current_user.id)]


@router.post("/auth/sessions/revoke-all", response_model=MessageResponse)
def revoke_all_sessions(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    _manager(request).revoke_all_sessions(current_user.id)
    return MessageResponse(message="All sessions revoked.")


@router.post("/auth/sessions/{session_id}/revoke", response_model=MessageResponse)
def revoke_session(
    request: Request,
    session_id: int,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Revoke one of the caller's sessions. Someone else's session id is a 404."""
    _manager(request).revoke_session(current_user.id, session_id)
    return MessageResponse(message="Session revoked.")
