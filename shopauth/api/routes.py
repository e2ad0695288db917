from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from shopauth.api.schemas import (
    AuthResponse,
    CurrentSessionResponse,
    EmailVerificationRequest,
    Envelope,
    FailedAttemptReportResponse,
    FailedAttemptSummaryResponse,
    LoginRequest,
    LogoutResponse,
    MfaChallengeResponse,
    MfaResendRequest,
    MfaSettingRequest,
    MfaVerifyRequest,
    PasswordChangeRequest,
    PasswordChangeResponse,
    PasswordRecoveryRequest,
    PasswordResetConfirm,
    RegisterRequest,
    RegisterResponse,
    SecurityConfigPatch,
    SessionInfo,
    SessionListResponse,
    SessionsRevokedResponse,
    UserStatusResponse,
)
from shopauth.config import get_settings
from shopauth.logging import get_logger
from shopauth.service.auth import LoginResult
from shopauth.service.errors import MfaRequired
from shopauth.service.lockout import FailedAttemptSummary
from shopauth.service.runtime import get_runtime
from shopauth.service.sessions import AuthContext, SessionManager
from shopauth.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RENEWED_TOKEN_HEADER = "X-Renewed-Token"


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _request_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    """Bearer header first, then the session cookie."""
    token = SessionManager.extract_bearer(authorization)
    if token:
        return token
    return request.cookies.get(get_settings().cookie_name) or None


def _apply_session_cookie(response: Response, token: str, expires_at: Optional[datetime]) -> None:
    settings = get_settings()
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        settings.cookie_name,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        settings.cookie_name, path="/", secure=settings.cookie_secure, httponly=True, samesite="lax"
    )


async def _authenticate(
    request: Request,
    response: Response,
    authorization: Optional[str],
    *,
    required_role: Optional[str] = None,
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(
        _request_token(request, authorization), required_role=required_role
    )
    if ctx.renewed:
        _apply_session_cookie(response, ctx.token, ctx.expires_at)
        response.headers[RENEWED_TOKEN_HEADER] = ctx.token
    return ctx


async def get_user(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    return await _authenticate(request, response, authorization)


async def get_admin_user(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    return await _authenticate(request, response, authorization, required_role="admin")


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.user.id,
        role=result.user.role,
        session_id=result.session.id,
        session_expires_at=result.session.expires_at,
        access_token=result.token,
        client_class=result.session.client_class,
        password_change_required=result.password_change_required,
    )


def _session_info(session: Session, current_id: str) -> SessionInfo:
    return SessionInfo(
        session_id=session.id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_activity_at=session.last_activity_at,
        ip=session.ip,
        client_id=session.client_id,
        client_class=session.client_class,
        refresh_eligible=session.refresh_eligible,
        current=session.id == current_id,
    )


def _failed_attempt_summary(summary: FailedAttemptSummary) -> FailedAttemptSummaryResponse:
    return FailedAttemptSummaryResponse(
        user_id=summary.user_id,
        email=summary.email,
        name=summary.name,
        role=summary.role,
        status=summary.status,
        attempts=summary.attempts,
        lockouts=summary.lockouts,
        resolved=summary.resolved,
        last_attempt_at=summary.last_attempt_at,
    )


def _user_status(user: User) -> UserStatusResponse:
    return UserStatusResponse(
        user_id=user.id,
        email=user.email,
        role=user.role,
        status=user.status,
        mfa_enabled=user.mfa_enabled,
    )


# registration


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a pending customer account and mail the verification link.

    Raises:
        409: If the email is already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email, body.password, name=body.name, phone=body.phone
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user_id=result.user.id,
            email=result.user.email,
            status=result.user.status,
            verification_email_sent=result.email_delivered,
        ),
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data=_user_status(user))


# sign-in


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Accounts with MFA enabled get ``mfa_required`` and an emailed code
    instead of a session; finish with ``/auth/mfa/verify-otp``.

    Raises:
        400: Invalid credentials
        403: Account pending, locked, or at its session limit
    """
    runtime = get_runtime()
    try:
        result = await runtime.auth.login(
            body.email,
            body.password,
            ip=_client_ip(request),
            client_id=body.client_id,
        )
    except MfaRequired as exc:
        return Envelope(
            status="ok",
            data=MfaChallengeResponse(user_id=exc.user_id, delivery=exc.delivery),
        )
    _apply_session_cookie(response, result.token, result.session.expires_at)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/mfa/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: MfaVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.complete_mfa(
        str(body.user_id),
        body.code,
        ip=_client_ip(request),
        client_id=body.client_id,
    )
    _apply_session_cookie(response, result.token, result.session.expires_at)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/mfa/send-otp", response_model=Envelope, tags=["auth"])
async def resend_otp(body: MfaResendRequest, request: Request):
    """Mail a fresh sign-in code for a login that is waiting on MFA.

    The previous code stops working. Without an open login challenge the
    answer is ``mfa_expired`` and the client has to sign in again.
    """
    runtime = get_runtime()
    user_id = str(body.user_id)
    delivery = await runtime.auth.resend_mfa_code(user_id, ip=_client_ip(request))
    return Envelope(status="ok", data=MfaChallengeResponse(user_id=user_id, delivery=delivery))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    """Revoke the presented session. Logging out twice succeeds both times."""
    runtime = get_runtime()
    outcome = await runtime.auth.logout(_request_token(request, authorization))
    _clear_session_cookie(response)
    return Envelope(
        status="ok",
        data=LogoutResponse(session_id=outcome.session_id, already_revoked=outcome.already_revoked),
    )


# sessions


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=CurrentSessionResponse(
            user_id=principal.user_id,
            role=principal.role,
            session_id=principal.session_id,
            expires_at=principal.expires_at,
            renewed=principal.renewed,
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(items=[_session_info(s, principal.session_id) for s in sessions]),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: UUID = Path(...),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    outcome = await runtime.sessions.revoke_session(principal.user_id, str(session_id))
    return Envelope(
        status="ok",
        data=LogoutResponse(session_id=outcome.session_id, already_revoked=outcome.already_revoked),
    )


# passwords


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change the password. Every session, including this one, is revoked."""
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    _clear_session_cookie(response)
    return Envelope(
        status="ok",
        data=PasswordChangeResponse(
            sessions_revoked=result.sessions_revoked,
            notification_sent=result.email_delivered,
        ),
    )


@router.post("/auth/password/recovery", response_model=Envelope, tags=["auth"])
async def request_password_recovery(body: PasswordRecoveryRequest):
    runtime = get_runtime()
    await runtime.auth.start_password_recovery(body.email)
    # same answer whether or not the account exists
    return Envelope(status="ok", data={"message": "if the account exists, a recovery code has been sent"})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    result = await runtime.auth.complete_password_recovery(body.email, body.code, body.new_password)
    return Envelope(
        status="ok",
        data=PasswordChangeResponse(
            sessions_revoked=result.sessions_revoked,
            notification_sent=result.email_delivered,
            account_unlocked=result.unlocked,
        ),
    )


@router.put("/auth/mfa", response_model=Envelope, tags=["auth"])
async def set_mfa(body: MfaSettingRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.set_mfa(principal.user_id, body.enabled)
    return Envelope(status="ok", data=_user_status(user))


# administration


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock(
    user_id: UUID = Path(...),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.admin_unlock(str(user_id), actor_id=principal.user_id)
    return Envelope(status="ok", data=_user_status(user))


@router.post("/admin/users/{user_id}/lock", response_model=Envelope, tags=["admin"])
async def admin_lock(
    user_id: UUID = Path(...),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.admin_lock(str(user_id), actor_id=principal.user_id)
    return Envelope(status="ok", data=_user_status(user))


@router.post("/admin/users/{user_id}/sessions/revoke", response_model=Envelope, tags=["admin"])
async def admin_revoke_sessions(
    user_id: UUID = Path(...),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    count = await runtime.auth.admin_revoke_sessions(str(user_id), actor_id=principal.user_id)
    return Envelope(status="ok", data=SessionsRevokedResponse(user_id=str(user_id), sessions_revoked=count))


@router.get("/admin/failed-attempts", response_model=Envelope, tags=["admin"])
async def failed_attempts_report(
    period: str = Query("day"),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    report = await runtime.tracker.report(period)
    return Envelope(
        status="ok",
        data=FailedAttemptReportResponse(
            period=report.period,
            since=report.since,
            customers=[_failed_attempt_summary(s) for s in report.customers],
            admins=[_failed_attempt_summary(s) for s in report.admins],
        ),
    )


@router.get("/admin/security-config", response_model=Envelope, tags=["admin"])
async def get_security_config(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    config = await runtime.security_config.current()
    return Envelope(status="ok", data=config.model_dump())


@router.patch("/admin/security-config", response_model=Envelope, tags=["admin"])
async def update_security_config(
    body: SecurityConfigPatch,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    config = await runtime.security_config.update(
        body.model_dump(exclude_none=True), actor_id=principal.user_id
    )
    return Envelope(status="ok", data=config.model_dump())
