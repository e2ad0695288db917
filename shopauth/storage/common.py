"""Storage contracts shared by the memory and postgres implementations.

Services only talk to these protocols. Anything that must be atomic per user
(failed-attempt escalation, capped session creation, MFA verification)
runs as a unit of work through ``AuthStore.run_exclusive``: both backends
serialize units of work for the same user and commit them all or nothing.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from shopauth.storage.models import (
    Credential,
    FailedAttemptRecord,
    MfaChallenge,
    PasswordHistoryEntry,
    Session,
    User,
)

T = TypeVar("T")


class UserTransaction(Protocol):
    """Reads and writes scoped to one user inside a serialized unit of work."""

    user_id: str

    def get_user(self) -> Optional[User]: ...

    def set_status(self, status: str) -> None: ...

    def get_credential(self) -> Optional[Credential]: ...

    def save_credential(self, credential: Credential) -> None: ...

    def get_open_failed_attempt(self) -> Optional[FailedAttemptRecord]: ...

    def save_failed_attempt(self, record: FailedAttemptRecord) -> None: ...

    def resolve_failed_attempts(self, now: datetime) -> int: ...

    def count_lockouts_since(self, since: datetime) -> int: ...

    def count_active_sessions(self, now: datetime) -> int: ...

    def add_session(self, session: Session) -> None: ...

    def get_challenge(self, purpose: str) -> Optional[MfaChallenge]: ...

    def save_challenge(self, challenge: MfaChallenge) -> None: ...


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: str = "customer",
        status: str = "pending",
        verification_token: Optional[str] = None,
        verification_expires_at: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_verification_token(self, token: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def set_user_mfa(self, user_id: str, enabled: bool) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def get_credential(self, user_id: str) -> Optional[Credential]: ...

    def list_password_history(self, user_id: str) -> List[PasswordHistoryEntry]: ...

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> None: ...

    def list_failed_attempts(self, user_id: str) -> List[FailedAttemptRecord]: ...

    def list_failed_attempts_since(self, since: datetime) -> List[FailedAttemptRecord]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def replace_session_token(
        self,
        session_id: str,
        expected_token: str,
        new_token: str,
        new_expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def revoke_session(self, session_id: str, now: datetime) -> bool: ...

    def revoke_user_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def get_security_config(self) -> Dict[str, Any]: ...

    def save_security_config(self, values: Dict[str, Any]) -> Dict[str, Any]: ...

    def run_exclusive(self, user_id: str, work: Callable[[UserTransaction], T]) -> T: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def challenge_key(user_id: str, purpose: str) -> str:
    return f"{user_id}:{purpose}"
