from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from shopauth.config import Settings
from shopauth.logging import get_logger
from shopauth.service.errors import ServerError
from shopauth.storage.models import Credential

logger = get_logger(__name__)


class CredentialStore:
    """Argon2id hashing and verification for account passwords."""

    def __init__(self, settings: Settings) -> None:
        self._hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        # verified against when the account does not exist, to keep timing flat
        self._dummy_hash = self._hasher.hash("unused-password-placeholder")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        """Check ``password`` against a stored hash.

        A mismatch returns False. A stored hash that cannot be parsed is a
        data problem rather than a failed login, so it raises ServerError.
        """
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except InvalidHash as exc:
            logger.error("password_hash_unreadable", error=str(exc))
            raise ServerError("stored credential is unreadable") from exc
        except VerificationError:
            return False

    def burn_verify(self, password: str) -> None:
        """Spend the same work as a real verify for an unknown account."""
        self.verify(password, self._dummy_hash)

    def is_reused_password(self, history_hashes: Iterable[str], candidate: str) -> bool:
        for previous in history_hashes:
            try:
                if self.verify(candidate, previous):
                    return True
            except ServerError:
                logger.warning("password_history_entry_unreadable")
        return False

    @staticmethod
    def needs_rotation(credential: Credential, rotation_days: int, now: datetime) -> bool:
        if credential.requires_change:
            return True
        return now - credential.last_changed_at > timedelta(days=rotation_days)
