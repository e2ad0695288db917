from __future__ import annotations

import hmac
import secrets
import string
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional

from shopauth.logging import get_logger, log_audit_event
from shopauth.service.errors import MfaExpired, MfaInvalidCode
from shopauth.service.security_config import SecurityConfigProvider
from shopauth.storage.common import AuthStore, UserTransaction
from shopauth.storage.models import MfaChallenge

logger = get_logger(__name__)

CODE_LENGTH = 8
MAX_ATTEMPTS = 3
_CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class MfaVerification:
    status: str  # "ok", "failed" or "expired"
    attempts_remaining: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def _normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class MfaChallengeManager:
    """One-time codes for sign-in and password recovery.

    A user has at most one challenge per purpose; issuing a new one
    supersedes the previous code. Codes are single-use and allow
    ``MAX_ATTEMPTS`` wrong guesses before they are invalidated.
    """

    def __init__(self, store: AuthStore, config: SecurityConfigProvider) -> None:
        self.store = store
        self.config = config

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _generate_code(self) -> str:
        return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(CODE_LENGTH))

    async def _new_challenge(self, user_id: str, purpose: str) -> MfaChallenge:
        cfg = await self.config.current()
        now = self._now()
        return MfaChallenge(
            id=str(uuid.uuid4()),
            user_id=user_id,
            code=self._generate_code(),
            expires_at=now + timedelta(seconds=cfg.otp_lifetime),
            purpose=purpose,
            attempts_remaining=MAX_ATTEMPTS,
            valid=True,
            created_at=now,
        )

    async def issue(self, user_id: str, *, purpose: str = "login") -> str:
        challenge = await self._new_challenge(user_id, purpose)
        self.store.run_exclusive(user_id, lambda txn: txn.save_challenge(challenge))
        log_audit_event(user_id, "mfa_challenge_issued", f"{purpose} code issued", challenge_id=challenge.id)
        return challenge.code

    async def reissue(self, user_id: str, *, purpose: str = "login") -> str:
        """Replace an outstanding challenge with a fresh code.

        Only a challenge that is still open can be replaced; a used or
        exhausted one raises MfaExpired. A code that merely timed out may be
        resent.
        """
        challenge = await self._new_challenge(user_id, purpose)

        def _work(txn: UserTransaction) -> None:
            current = txn.get_challenge(purpose)
            if current is None or not current.valid or current.attempts_remaining <= 0:
                raise MfaExpired()
            txn.save_challenge(challenge)

        self.store.run_exclusive(user_id, _work)
        log_audit_event(user_id, "mfa_challenge_reissued", f"{purpose} code resent", challenge_id=challenge.id)
        return challenge.code

    async def verify(self, user_id: str, code: Optional[str], *, purpose: str = "login") -> MfaVerification:
        now = self._now()
        submitted = _normalize_code(code)

        def _work(txn: UserTransaction) -> MfaVerification:
            challenge = txn.get_challenge(purpose)
            if (
                challenge is None
                or not challenge.valid
                or challenge.attempts_remaining <= 0
                or challenge.expires_at <= now
            ):
                return MfaVerification("expired")
            if submitted and hmac.compare_digest(submitted.encode(), challenge.code.encode()):
                txn.save_challenge(replace(challenge, valid=False))
                return MfaVerification("ok", challenge.attempts_remaining)
            remaining = challenge.attempts_remaining - 1
            txn.save_challenge(replace(challenge, attempts_remaining=remaining, valid=remaining > 0))
            return MfaVerification("failed", remaining)

        result = self.store.run_exclusive(user_id, _work)
        if result.ok:
            log_audit_event(user_id, "mfa_verified", f"{purpose} code accepted")
        elif result.status == "failed":
            log_audit_event(
                user_id,
                "mfa_failed",
                f"wrong {purpose} code, {result.attempts_remaining} attempts left",
            )
        else:
            log_audit_event(user_id, "mfa_expired", f"{purpose} code missing, used or expired")
        return result

    async def verify_or_raise(self, user_id: str, code: Optional[str], *, purpose: str = "login") -> None:
        result = await self.verify(user_id, code, purpose=purpose)
        if result.ok:
            return
        if result.status == "failed":
            raise MfaInvalidCode(result.attempts_remaining)
        raise MfaExpired()
