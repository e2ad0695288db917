from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from shopauth.logging import get_logger, log_audit_event
from shopauth.service.credentials import CredentialStore
from shopauth.service.email import EmailService
from shopauth.service.errors import (
    AccountPending,
    AuthenticationError,
    BadRequestError,
    ConflictError,
    InvalidCredentials,
    MfaExpired,
    MfaRequired,
    NotFoundError,
    PasswordReused,
    SessionLimitReached,
)
from shopauth.service.lockout import FailedAttemptTracker, lock_error
from shopauth.service.mfa import MfaChallengeManager
from shopauth.service.security_config import SecurityConfig, SecurityConfigProvider
from shopauth.service.sessions import AuthContext, RevokeOutcome, SessionManager
from shopauth.storage.common import AuthStore
from shopauth.storage.errors import ConstraintViolation
from shopauth.storage.models import Credential, Session, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class LoginResult:
    user: User
    token: str
    session: Session
    password_change_required: bool = False


@dataclass(frozen=True)
class RegistrationResult:
    user: User
    email_delivered: bool


@dataclass(frozen=True)
class PasswordChangeResult:
    sessions_revoked: int
    email_delivered: bool
    unlocked: bool = False


class AuthOrchestrator:
    """Sequences the login state machine and the account flows around it.

    Login walks: account lookup, status gate, password check (feeding the
    failed-attempt tracker), session cap, then either an MFA challenge or a
    new session. Every transition leaves one audit line.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        credentials: CredentialStore,
        tracker: FailedAttemptTracker,
        sessions: SessionManager,
        mfa: MfaChallengeManager,
        config: SecurityConfigProvider,
        email: EmailService,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.tracker = tracker
        self.sessions = sessions
        self.mfa = mfa
        self.config = config
        self.email = email

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _check_status(self, user: User, *, action: str, ip: Optional[str] = None) -> None:
        if user.status == "pending":
            log_audit_event(user.id, action, "rejected: email not verified", ip=ip)
            raise AccountPending()
        error = lock_error(user.status)
        if error is not None:
            log_audit_event(user.id, action, f"rejected: account {user.status}", ip=ip)
            raise error

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> LoginResult:
        """Authenticate with email and password.

        Raises MfaRequired (after issuing and mailing a code) when the account
        has MFA enabled; the caller then finishes with ``complete_mfa``.
        """
        user = self.store.get_user_by_email(email)
        if user is None:
            self.credentials.burn_verify(password)
            log_audit_event(None, "login_failed", "unknown account", ip=ip)
            raise InvalidCredentials()
        self._check_status(user, action="login_rejected", ip=ip)

        credential = self.store.get_credential(user.id)
        if credential is None or not self.credentials.verify(password, credential.password_hash):
            outcome = await self.tracker.record_failure(user.id, ip)
            error = lock_error(outcome.status)
            if error is not None:
                raise error
            raise InvalidCredentials()

        await self.tracker.clear(user.id)
        cfg = await self.config.current()
        cap = cfg.session_cap(user.role)
        if await self.sessions.count_active(user.id) >= cap:
            log_audit_event(user.id, "login_rejected", f"session limit {cap} reached", ip=ip)
            raise SessionLimitReached(detail={"limit": cap})

        if user.mfa_enabled:
            delivery = await self._send_login_code(user, cfg)
            log_audit_event(user.id, "mfa_required", f"password accepted, code {delivery}", ip=ip)
            raise MfaRequired(user.id, delivery=delivery)

        return await self._open_session(user, credential, cfg, ip=ip, client_id=client_id, action="login")

    async def complete_mfa(
        self,
        user_id: str,
        code: str,
        *,
        ip: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user(user_id)
        if user is None:
            raise MfaExpired()
        self._check_status(user, action="mfa_rejected", ip=ip)
        await self.mfa.verify_or_raise(user.id, code, purpose="login")
        credential = self.store.get_credential(user.id)
        cfg = await self.config.current()
        return await self._open_session(user, credential, cfg, ip=ip, client_id=client_id, action="mfa_login")

    async def resend_mfa_code(self, user_id: str, *, ip: Optional[str] = None) -> str:
        """Send a new sign-in code for a login that is waiting on MFA.

        The new code supersedes the old one. Without an open login challenge
        the caller has to sign in with the password again (MfaExpired).
        """
        user = self.store.get_user(user_id)
        if user is None or not user.mfa_enabled:
            raise MfaExpired()
        self._check_status(user, action="mfa_rejected", ip=ip)
        cfg = await self.config.current()
        code = await self.mfa.reissue(user.id, purpose="login")
        delivery = await self._deliver_login_code(user, code, cfg)
        log_audit_event(user.id, "mfa_code_resent", f"code {delivery}", ip=ip)
        return delivery

    async def _send_login_code(self, user: User, cfg: SecurityConfig) -> str:
        code = await self.mfa.issue(user.id, purpose="login")
        return await self._deliver_login_code(user, code, cfg)

    async def _deliver_login_code(self, user: User, code: str, cfg: SecurityConfig) -> str:
        sent = await asyncio.to_thread(
            self.email.send_mfa_code, user.email, code, lifetime_minutes=max(1, cfg.otp_lifetime // 60)
        )
        if not sent:
            # the challenge stays valid; the user can still enter a code delivered late
            log_audit_event(user.id, "mfa_delivery_failed", "sign-in code email not delivered")
            return "failed"
        return "sent"

    async def _open_session(
        self,
        user: User,
        credential: Optional[Credential],
        cfg: SecurityConfig,
        *,
        ip: Optional[str],
        client_id: Optional[str],
        action: str,
    ) -> LoginResult:
        token, session = await self.sessions.create(user, ip=ip, client_id=client_id)
        change_required = bool(
            credential
            and CredentialStore.needs_rotation(credential, cfg.password_rotation_days, self._now())
        )
        log_audit_event(user.id, action, "signed in", session_id=session.id, ip=ip)
        return LoginResult(
            user=user,
            token=token,
            session=session,
            password_change_required=change_required,
        )

    async def authenticate(self, token: Optional[str], *, required_role: Optional[str] = None) -> AuthContext:
        return await self.sessions.authenticate(token, required_role=required_role)

    async def logout(self, token: Optional[str]) -> RevokeOutcome:
        if not token:
            raise AuthenticationError("not authenticated")
        outcome = await self.sessions.revoke(token)
        log_audit_event(
            outcome.user_id,
            "logout",
            "already signed out" if outcome.already_revoked else "signed out",
            session_id=outcome.session_id,
        )
        return outcome

    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_active(user_id)

    # registration

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: str = "customer",
    ) -> RegistrationResult:
        cfg = await self.config.current()
        token = secrets.token_urlsafe(32)
        try:
            user = self.store.create_user(
                email,
                self.credentials.hash(password),
                name=name,
                phone=phone,
                role=role,
                status="pending",
                verification_token=token,
                verification_expires_at=self._now() + timedelta(seconds=cfg.email_verification_lifetime),
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        sent = await asyncio.to_thread(
            self.email.send_email_verification,
            user.email,
            token,
            lifetime_hours=max(1, cfg.email_verification_lifetime // 3600),
        )
        log_audit_event(user.id, "register", "account created, awaiting email verification", email_delivered=sent)
        return RegistrationResult(user=user, email_delivered=sent)

    async def verify_email(self, token: str) -> User:
        user = self.store.get_user_by_verification_token(token) if token else None
        if (
            user is None
            or user.email_verification_expires_at is None
            or user.email_verification_expires_at <= self._now()
        ):
            raise BadRequestError("invalid or expired verification token")
        verified = self.store.mark_email_verified(user.id)
        if verified is None:
            raise NotFoundError("user not found")
        log_audit_event(user.id, "email_verified", "email address verified")
        return verified

    # passwords

    def _ensure_not_reused(self, user_id: str, new_password: str) -> None:
        history = [entry.password_hash for entry in self.store.list_password_history(user_id)]
        if self.credentials.is_reused_password(history, new_password):
            log_audit_event(user_id, "password_change_rejected", "password reuse")
            raise PasswordReused()

    async def _finish_password_change(
        self, user: User, *, action: str, unlocked: bool = False
    ) -> PasswordChangeResult:
        revoked = await self.sessions.revoke_all(user.id, reason="password changed")
        sent = await asyncio.to_thread(self.email.send_password_changed, user.email)
        log_audit_event(user.id, action, "password changed", sessions_revoked=revoked, unlocked=unlocked)
        return PasswordChangeResult(sessions_revoked=revoked, email_delivered=sent, unlocked=unlocked)

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> PasswordChangeResult:
        user = self.store.get_user(user_id)
        credential = self.store.get_credential(user_id)
        if user is None or credential is None:
            raise NotFoundError("user not found")
        if not self.credentials.verify(current_password, credential.password_hash):
            log_audit_event(user_id, "password_change_rejected", "current password mismatch")
            raise InvalidCredentials("current password is incorrect")
        self._ensure_not_reused(user_id, new_password)
        self.store.update_password(user_id, self.credentials.hash(new_password), self._now())
        return await self._finish_password_change(user, action="password_change")

    async def start_password_recovery(self, email: str) -> None:
        """Mail a recovery code if the account exists; callers never learn which."""
        user = self.store.get_user_by_email(email)
        if user is None:
            log_audit_event(None, "password_recovery_requested", "unknown account")
            return
        cfg = await self.config.current()
        code = await self.mfa.issue(user.id, purpose="recovery")
        sent = await asyncio.to_thread(
            self.email.send_recovery_code, user.email, code, lifetime_minutes=max(1, cfg.otp_lifetime // 60)
        )
        log_audit_event(user.id, "password_recovery_requested", "recovery code issued", email_delivered=sent)

    async def complete_password_recovery(self, email: str, code: str, new_password: str) -> PasswordChangeResult:
        """Reset the password with a recovery code.

        Also lifts a temporary lock, which is the self-service way out of
        one. Permanent locks still need an administrator.
        """
        user = self.store.get_user_by_email(email)
        if user is None:
            raise MfaExpired()
        await self.mfa.verify_or_raise(user.id, code, purpose="recovery")
        self._ensure_not_reused(user.id, new_password)
        now = self._now()
        self.store.update_password(user.id, self.credentials.hash(new_password), now)
        unlocked = self.store.run_exclusive(
            user.id, lambda txn: self.tracker.release_temporary_lock(txn, now)
        )
        if unlocked:
            log_audit_event(user.id, "account_unlocked", "temporary lock released by password reset")
        return await self._finish_password_change(user, action="password_reset", unlocked=unlocked)

    # account settings and administration

    async def set_mfa(self, user_id: str, enabled: bool) -> User:
        user = self.store.set_user_mfa(user_id, enabled)
        if user is None:
            raise NotFoundError("user not found")
        log_audit_event(user_id, "mfa_enabled" if enabled else "mfa_disabled", "MFA setting changed")
        return user

    async def admin_unlock(self, user_id: str, *, actor_id: str) -> User:
        return await self.tracker.admin_unlock(user_id, actor_id=actor_id)

    async def admin_lock(self, user_id: str, *, actor_id: str) -> User:
        user = await self.tracker.admin_lock(user_id, actor_id=actor_id)
        await self.sessions.revoke_all(user_id, actor_id=actor_id, reason="account locked by administrator")
        return user

    async def admin_revoke_sessions(self, user_id: str, *, actor_id: str) -> int:
        if self.store.get_user(user_id) is None:
            raise NotFoundError("user not found")
        return await self.sessions.revoke_all(user_id, actor_id=actor_id, reason="sessions revoked by administrator")
