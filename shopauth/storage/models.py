from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

USER_STATUSES = ("pending", "active", "locked_temporary", "locked_permanent")
LOCKED_STATUSES = ("locked_temporary", "locked_permanent")
ROLES = ("customer", "admin")
CLIENT_CLASSES = ("interactive", "api")
CHALLENGE_PURPOSES = ("login", "recovery")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    role: str = "customer"
    status: str = "pending"
    mfa_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    meta: Dict | None = None

    @property
    def is_locked(self) -> bool:
        return self.status in LOCKED_STATUSES


@dataclass
class Credential:
    user_id: str
    password_hash: str
    last_changed_at: datetime = field(default_factory=utcnow)
    # per-account override of the failed-attempt threshold
    max_failed_attempts: Optional[int] = None
    requires_change: bool = False


@dataclass
class PasswordHistoryEntry:
    user_id: str
    password_hash: str
    changed_at: datetime = field(default_factory=utcnow)


@dataclass
class FailedAttemptRecord:
    """A run of consecutive failed logins.

    At most one record per user is unresolved. A record closed by escalation
    has ``lockout`` set and counts as a lockout episode; one closed by a
    successful login does not.
    """

    id: str
    user_id: str
    attempts: int
    first_attempt_at: datetime
    last_attempt_at: datetime
    ip: Optional[str] = None
    resolved: bool = False
    lockout: bool = False
    resolved_at: Optional[datetime] = None

    @classmethod
    def open(cls, user_id: str, ip: Optional[str], now: datetime) -> "FailedAttemptRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            attempts=1,
            first_attempt_at=now,
            last_attempt_at=now,
            ip=ip,
        )


@dataclass
class Session:
    id: str
    user_id: str
    token: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    role: str = "customer"
    refresh_eligible: bool = True
    ip: Optional[str] = None
    client_id: Optional[str] = None
    client_class: str = "interactive"
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        ttl_seconds: int,
        *,
        session_id: str | None = None,
        role: str = "customer",
        refresh_eligible: bool = True,
        ip: str | None = None,
        client_id: str | None = None,
        client_class: str = "interactive",
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            last_activity_at=now,
            role=role,
            refresh_eligible=refresh_eligible,
            ip=ip,
            client_id=client_id,
            client_class=client_class,
        )

    def is_live(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class MfaChallenge:
    id: str
    user_id: str
    code: str
    expires_at: datetime
    purpose: str = "login"
    attempts_remaining: int = 3
    valid: bool = True
    created_at: datetime = field(default_factory=utcnow)
