"""Authentication routes"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from inventory_backend.api.deps import (
    AuthContext,
    enforce_rate_limit,
    get_auth_context,
    get_current_user,
    get_db,
    get_runtime,
    request_context,
)
from inventory_backend.core.exceptions import ResourceNotFoundError
from inventory_backend.models.token import TokenType
from inventory_backend.models.user import User
from inventory_backend.runtime import Runtime
from inventory_backend.schemas.events import AuditAction, SessionDetails
from inventory_backend.schemas.response import APIResponse
from inventory_backend.schemas.user import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    UserResponse,
)
from inventory_backend.services.auth_service import IssuedToken

router = APIRouter()


def _set_auth_cookies(
    response: Response,
    runtime: Runtime,
    access: IssuedToken,
    refresh: Optional[IssuedToken] = None,
) -> None:
    """Write HTTP-only cookies; secure and SameSite=strict in production."""
    settings = runtime.settings
    secure = settings.is_production
    same_site = "strict" if secure else "lax"

    response.set_cookie(
        settings.ACCESS_COOKIE_NAME,
        access.value,
        max_age=int(runtime.tokens.lifetime(TokenType.ACCESS).total_seconds()),
        path="/",
        httponly=True,
        secure=secure,
        samesite=same_site,
    )
    if refresh is not None:
        response.set_cookie(
            settings.REFRESH_COOKIE_NAME,
            refresh.value,
            max_age=int(runtime.tokens.lifetime(TokenType.REFRESH).total_seconds()),
            path=settings.refresh_cookie_path,
            httponly=True,
            secure=secure,
            samesite=same_site,
        )


def _clear_auth_cookies(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    response.delete_cookie(settings.ACCESS_COOKIE_NAME, path="/")
    response.delete_cookie(settings.REFRESH_COOKIE_NAME, path=settings.refresh_cookie_path)


@router.post("/register", response_model=APIResponse, status_code=status.HTTP_201_CREATED)
def register(
    body: RegisterRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """
    Register a new account

    The account is active but unverified until the emailed link is opened.

    Returns:
        Sanitized user
    """
    user = runtime.auth.register(db, body, request_context(request))
    return APIResponse(
        message="Registration successful. Please check your email to verify your account.",
        data=UserResponse.model_validate(user),
    )


@router.post("/login", response_model=APIResponse)
def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """
    Login endpoint - authenticate and set token cookies

    Args:
        body: Email, password and the remember-me flag
        db: Database session

    Returns:
        Sanitized user; tokens travel only in cookies
    """
    settings = runtime.settings
    context = request_context(request)
    client_ip = context.ip_address or "unknown"
    enforce_rate_limit(
        runtime,
        f"login:min:{client_ip}:{body.email}",
        settings.LOGIN_RATE_LIMIT_PER_MINUTE,
        60,
        "Too many login attempts. Please wait a minute.",
    )
    enforce_rate_limit(
        runtime,
        f"login:hour:{client_ip}:{body.email}",
        settings.LOGIN_RATE_LIMIT_PER_HOUR,
        3600,
        "Too many login attempts. Please try again later.",
    )

    result = runtime.auth.login(db, body, context)
    _set_auth_cookies(response, runtime, result.access, result.refresh)
    return APIResponse(message="Login successful", data=UserResponse.model_validate(result.user))


@router.post("/refresh-token", response_model=APIResponse)
def refresh_token(
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """
    Rotate the refresh token cookie and mint a new access token

    The refresh cookie authenticates this call. An access token sent along
    (bearer or cookie, expired or not) must be correctly signed and belong
    to the same user as the refresh token.
    """
    token = request.cookies.get(runtime.settings.REFRESH_COOKIE_NAME)
    access_user_id = None
    access_token = runtime.tokens.extract(request)
    if token and access_token:
        access_user_id = runtime.tokens.verify(access_token, TokenType.ACCESS, verify_exp=False)["sub"]
    result = runtime.auth.refresh(db, token, request_context(request), access_user_id=access_user_id)
    _set_auth_cookies(response, runtime, result.access, result.refresh)
    return APIResponse(message="Token refreshed successfully", data=UserResponse.model_validate(result.user))


@router.post("/logout", response_model=APIResponse)
def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Logout from this device, or from every device with ``allDevices``"""
    all_devices = bool(body and body.all_devices)
    runtime.auth.logout(db, auth.user, auth.token_id, all_devices, request_context(request))
    _clear_auth_cookies(response, runtime)
    return APIResponse(
        message="Logged out from all devices successfully" if all_devices else "Logged out successfully"
    )


@router.post("/forgot-password", response_model=APIResponse)
def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Request a reset link; the reply is identical whether or not the account exists"""
    context = request_context(request)
    enforce_rate_limit(
        runtime,
        f"forgot:hour:{context.ip_address or 'unknown'}",
        runtime.settings.PASSWORD_RESET_RATE_LIMIT_PER_HOUR,
        3600,
        "Too many password reset requests. Please try again later.",
    )
    message = runtime.auth.forgot_password(db, body.email, context)
    return APIResponse(message=message)


@router.post("/reset-password", response_model=APIResponse)
def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Set a new password from a reset token; every session is signed out"""
    runtime.auth.reset_password(
        db, body.token, body.new_password, body.confirm_password, request_context(request)
    )
    return APIResponse(message="Password has been reset successfully")


@router.post("/change-password", response_model=APIResponse)
def change_password(
    body: ChangePasswordRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    runtime.auth.change_password(
        db,
        current_user,
        body.current_password,
        body.new_password,
        body.confirm_password,
        request_context(request),
    )
    return APIResponse(message="Password changed successfully")


@router.get("/verify-email", response_model=APIResponse)
def verify_email(
    request: Request,
    token: str = Query(..., min_length=1),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    runtime.auth.verify_email(db, token, request_context(request))
    return APIResponse(message="Email verified successfully")


@router.get("/me", response_model=UserResponse)
def get_current_user_info(current_user: User = Depends(get_current_user)):
    """
    Get current user information

    Args:
        current_user: Current authenticated user

    Returns:
        User information
    """
    return UserResponse.model_validate(current_user)


@router.get("/sessions", response_model=APIResponse)
def list_sessions(
    auth: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """List the caller's sessions, flagging the one making this request"""
    sessions = []
    for session in runtime.security.list_sessions(db, auth.user.id):
        token = session.token
        sessions.append(
            SessionResponse(
                id=session.id,
                last_active=session.last_active,
                created_at=session.created_at,
                ip_address=token.ip_address if token else None,
                device_info=token.device_info if token else None,
                current=session.token_id == auth.token_id,
            )
        )
    return APIResponse(message="Active sessions", data=sessions)


@router.delete("/sessions/{session_id}", response_model=APIResponse)
def revoke_session(
    session_id: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    if not runtime.security.revoke_session(db, auth.user.id, session_id):
        raise ResourceNotFoundError("Session")
    runtime.audit.log_audit_event(
        db,
        user_id=auth.user.id,
        action=AuditAction.SESSION_REVOKED,
        resource="Session",
        details=SessionDetails(session_id=session_id),
        context=request_context(request),
    )
    return APIResponse(message="Session revoked successfully")


@router.delete("/sessions", response_model=APIResponse)
def revoke_other_sessions(
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Revoke every session except the current one"""
    revoked = runtime.security.revoke_other_sessions(db, auth.user.id, auth.token_id)
    runtime.audit.log_audit_event(
        db,
        user_id=auth.user.id,
        action=AuditAction.OTHER_SESSIONS_REVOKED,
        resource="Session",
        details=SessionDetails(session_id=auth.session_id, affected_sessions=revoked),
        context=request_context(request),
    )
    return APIResponse(message=f"Revoked {len(revoked)} other session(s)", data={"revoked": revoked})
