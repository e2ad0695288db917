"""Failed-login tracking and account lockout escalation.

An account moves through four states::

    clear --fail--> tracking --threshold--> locked_temporary
                                    \\--(max lockouts in window)--> locked_permanent

Each run of consecutive failures is one ``FailedAttemptRecord``. Reaching
the threshold closes the run as a lockout episode; episodes inside the
trailing ``block_period_days`` window decide whether the lock is
permanent. Permanent locks are only lifted by an administrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from shopauth.logging import get_logger, log_audit_event
from shopauth.service.errors import (
    AccountLockedPermanent,
    AccountLockedTemporary,
    BadRequestError,
    NotFoundError,
    ServiceError,
)
from shopauth.service.security_config import SecurityConfigProvider
from shopauth.storage.common import AuthStore, UserTransaction
from shopauth.storage.models import FailedAttemptRecord, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class FailureOutcome:
    attempts: int
    threshold: int
    status: str
    lockouts_in_window: int = 0
    escalated: bool = False

    @property
    def locked(self) -> bool:
        return self.status in ("locked_temporary", "locked_permanent")

    @property
    def permanent(self) -> bool:
        return self.status == "locked_permanent"

    @property
    def remaining(self) -> int:
        return max(0, self.threshold - self.attempts)


REPORT_PERIODS: Dict[str, timedelta] = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


@dataclass
class FailedAttemptSummary:
    """Failed logins of one account inside a report period."""

    user_id: str
    email: str
    name: Optional[str]
    role: str
    status: str
    attempts: int = 0
    lockouts: int = 0
    resolved: bool = False
    last_attempt_at: Optional[datetime] = None


@dataclass(frozen=True)
class FailedAttemptReport:
    period: str
    since: datetime
    customers: List[FailedAttemptSummary] = field(default_factory=list)
    admins: List[FailedAttemptSummary] = field(default_factory=list)


def lock_error(status: str) -> Optional[ServiceError]:
    if status == "locked_permanent":
        return AccountLockedPermanent()
    if status == "locked_temporary":
        return AccountLockedTemporary()
    return None


class FailedAttemptTracker:
    def __init__(self, store: AuthStore, config: SecurityConfigProvider) -> None:
        self.store = store
        self.config = config

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def record_failure(self, user_id: str, ip: Optional[str] = None) -> FailureOutcome:
        """Count one failed login and escalate when the threshold is reached.

        The increment and the escalation decision run in one serialized unit
        of work, so concurrent failures for the same account cannot both
        observe a count below the threshold.
        """
        cfg = await self.config.current()
        now = self._now()
        window_start = now - timedelta(days=cfg.block_period_days)

        def _work(txn: UserTransaction) -> FailureOutcome:
            user = txn.get_user()
            if user is None:
                raise NotFoundError("user not found", detail={"user_id": user_id})
            credential = txn.get_credential()
            threshold = cfg.max_failed_login_attempts
            if credential and credential.max_failed_attempts:
                threshold = credential.max_failed_attempts
            if user.is_locked:
                # failures that raced past the status gate belong to the episode already closed
                return FailureOutcome(attempts=threshold, threshold=threshold, status=user.status)

            record = txn.get_open_failed_attempt()
            if record is None:
                record = FailedAttemptRecord.open(user_id, ip, now)
            else:
                record = replace(record, attempts=record.attempts + 1, last_attempt_at=now, ip=ip or record.ip)

            if record.attempts < threshold:
                txn.save_failed_attempt(record)
                return FailureOutcome(attempts=record.attempts, threshold=threshold, status=user.status)

            txn.save_failed_attempt(replace(record, resolved=True, lockout=True, resolved_at=now))
            if credential is not None:
                txn.save_credential(replace(credential, requires_change=True))
            lockouts = txn.count_lockouts_since(window_start)
            if user.status == "locked_permanent" or lockouts >= cfg.max_blocks_in_n_days:
                status = "locked_permanent"
            else:
                status = "locked_temporary"
            txn.set_status(status)
            return FailureOutcome(
                attempts=record.attempts,
                threshold=threshold,
                status=status,
                lockouts_in_window=lockouts,
                escalated=True,
            )

        outcome = self.store.run_exclusive(user_id, _work)
        if outcome.escalated:
            log_audit_event(
                user_id,
                "account_locked",
                f"account {outcome.status} after {outcome.attempts} failed attempts",
                ip=ip,
                lockouts_in_window=outcome.lockouts_in_window,
            )
        else:
            log_audit_event(
                user_id,
                "login_failed",
                f"failed attempt {outcome.attempts}/{outcome.threshold}",
                ip=ip,
            )
        return outcome

    async def clear(self, user_id: str) -> int:
        """Close the open failure run after a successful login.

        The run is not a lockout episode and never counts toward escalation.
        """
        now = self._now()
        cleared = self.store.run_exclusive(user_id, lambda txn: txn.resolve_failed_attempts(now))
        if cleared:
            log_audit_event(user_id, "failed_attempts_cleared", "failed attempts reset after login")
        return cleared

    async def admin_unlock(self, user_id: str, *, actor_id: Optional[str]) -> User:
        now = self._now()

        def _work(txn: UserTransaction) -> User:
            user = txn.get_user()
            if user is None:
                raise NotFoundError("user not found", detail={"user_id": user_id})
            if not user.is_locked:
                raise BadRequestError("user is not locked", detail={"status": user.status})
            txn.resolve_failed_attempts(now)
            credential = txn.get_credential()
            if credential is not None:
                txn.save_credential(replace(credential, requires_change=False, max_failed_attempts=None))
            txn.set_status("active")
            return replace(user, status="active")

        user = self.store.run_exclusive(user_id, _work)
        log_audit_event(actor_id, "admin_unlock", "account unlocked by administrator", target_user_id=user_id)
        return user

    async def admin_lock(self, user_id: str, *, actor_id: Optional[str]) -> User:
        def _work(txn: UserTransaction) -> User:
            user = txn.get_user()
            if user is None:
                raise NotFoundError("user not found", detail={"user_id": user_id})
            if user.status == "locked_permanent":
                return user
            credential = txn.get_credential()
            if credential is not None:
                txn.save_credential(replace(credential, requires_change=True))
            txn.set_status("locked_temporary")
            return replace(user, status="locked_temporary")

        user = self.store.run_exclusive(user_id, _work)
        log_audit_event(actor_id, "admin_lock", f"account set to {user.status} by administrator", target_user_id=user_id)
        return user

    async def report(self, period: str) -> FailedAttemptReport:
        """Aggregate failed logins per account over ``period`` (day, week or month).

        Runs touched by the period count in full. Customers and administrators
        are listed separately, most attempts first.
        """
        span = REPORT_PERIODS.get(period)
        if span is None:
            raise BadRequestError(
                "invalid report period", detail={"period": period, "allowed": sorted(REPORT_PERIODS)}
            )
        since = self._now() - span
        summaries: Dict[str, FailedAttemptSummary] = {}
        for record in self.store.list_failed_attempts_since(since):
            summary = summaries.get(record.user_id)
            if summary is None:
                user = self.store.get_user(record.user_id)
                if user is None:
                    continue
                summary = FailedAttemptSummary(
                    user_id=user.id,
                    email=user.email,
                    name=user.name,
                    role=user.role,
                    status=user.status,
                )
                summaries[user.id] = summary
            summary.attempts += record.attempts
            summary.lockouts += int(record.lockout)
            summary.resolved = summary.resolved or record.resolved
            if summary.last_attempt_at is None or record.last_attempt_at > summary.last_attempt_at:
                summary.last_attempt_at = record.last_attempt_at

        ranked = sorted(summaries.values(), key=lambda s: s.attempts, reverse=True)
        return FailedAttemptReport(
            period=period,
            since=since,
            customers=[s for s in ranked if s.role != "admin"],
            admins=[s for s in ranked if s.role == "admin"],
        )

    def release_temporary_lock(self, txn: UserTransaction, now: datetime) -> bool:
        """Return a temporarily locked account to active inside ``txn``.

        Used by password recovery. Permanent locks are left in place.
        """
        user = txn.get_user()
        if user is None or user.status != "locked_temporary":
            return False
        txn.resolve_failed_attempts(now)
        txn.set_status("active")
        return True
