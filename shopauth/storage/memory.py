from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from shopauth.logging import get_logger
from shopauth.storage.common import challenge_key, normalize_email
from shopauth.storage.errors import ConstraintViolation
from shopauth.storage.models import (
    Credential,
    FailedAttemptRecord,
    MfaChallenge,
    PasswordHistoryEntry,
    Session,
    User,
    utcnow,
)

T = TypeVar("T")


class _MemoryUserTransaction:
    """Per-user view over the store; only used while ``_data_lock`` is held."""

    def __init__(self, store: "MemoryStore", user_id: str) -> None:
        self.store = store
        self.user_id = user_id

    def get_user(self) -> Optional[User]:
        user = self.store.users.get(self.user_id)
        return replace(user) if user else None

    def set_status(self, status: str) -> None:
        user = self.store.users.get(self.user_id)
        if user is None:
            raise ConstraintViolation("user not found", {"user_id": self.user_id})
        user.status = status

    def get_credential(self) -> Optional[Credential]:
        cred = self.store.credentials.get(self.user_id)
        return replace(cred) if cred else None

    def save_credential(self, credential: Credential) -> None:
        self.store.credentials[self.user_id] = replace(credential)

    def get_open_failed_attempt(self) -> Optional[FailedAttemptRecord]:
        for record in self.store.failed_attempts.get(self.user_id, []):
            if not record.resolved:
                return replace(record)
        return None

    def save_failed_attempt(self, record: FailedAttemptRecord) -> None:
        records = self.store.failed_attempts.setdefault(self.user_id, [])
        for idx, existing in enumerate(records):
            if existing.id == record.id:
                records[idx] = replace(record)
                return
        records.append(replace(record))

    def resolve_failed_attempts(self, now: datetime) -> int:
        resolved = 0
        for record in self.store.failed_attempts.get(self.user_id, []):
            if not record.resolved:
                record.resolved = True
                record.resolved_at = now
                resolved += 1
        return resolved

    def count_lockouts_since(self, since: datetime) -> int:
        return sum(
            1
            for record in self.store.failed_attempts.get(self.user_id, [])
            if record.lockout and record.resolved_at and record.resolved_at >= since
        )

    def count_active_sessions(self, now: datetime) -> int:
        return sum(
            1
            for sess in self.store.sessions.values()
            if sess.user_id == self.user_id and sess.is_live(now)
        )

    def add_session(self, session: Session) -> None:
        if self.user_id not in self.store.users:
            raise ConstraintViolation("user does not exist", {"user_id": self.user_id})
        self.store.sessions[session.id] = replace(session)

    def get_challenge(self, purpose: str) -> Optional[MfaChallenge]:
        challenge = self.store.mfa_challenges.get(challenge_key(self.user_id, purpose))
        return replace(challenge) if challenge else None

    def save_challenge(self, challenge: MfaChallenge) -> None:
        self.store.mfa_challenges[challenge_key(self.user_id, challenge.purpose)] = replace(
            challenge
        )


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    State is written to ``<fs_root>/state/memory_store.json`` after every
    mutation and reloaded on construction.
    """

    def __init__(self, fs_root: str = "/tmp/shopauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.failed_attempts: Dict[str, List[FailedAttemptRecord]] = {}
        self.sessions: Dict[str, Session] = {}
        self.mfa_challenges: Dict[str, MfaChallenge] = {}
        self.security_config: Dict[str, Any] = {}
        # RLock so nested store calls from inside run_exclusive do not deadlock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users

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
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                phone=phone,
                role=role,
                status=status,
                created_at=now,
                email_verification_token=verification_token,
                email_verification_expires_at=verification_expires_at,
            )
            self.users[user.id] = user
            self.credentials[user.id] = Credential(
                user_id=user.id, password_hash=password_hash, last_changed_at=now
            )
            self.password_history[user.id] = [
                PasswordHistoryEntry(user_id=user.id, password_hash=password_hash, changed_at=now)
            ]
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email_verification_token == token),
                None,
            )
            return replace(user) if user else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.status == "pending":
                user.status = "active"
            user.email_verification_token = None
            user.email_verification_expires_at = None
            self._persist_state()
            return replace(user)

    def set_user_mfa(self, user_id: str, enabled: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.mfa_enabled = enabled
            self._persist_state()
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return replace(user)

    # credentials

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            return replace(cred) if cred else None

    def list_password_history(self, user_id: str) -> List[PasswordHistoryEntry]:
        with self._data_lock:
            return [replace(entry) for entry in self.password_history.get(user_id, [])]

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> None:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if cred is None:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            cred.password_hash = password_hash
            cred.last_changed_at = now
            cred.requires_change = False
            self.password_history.setdefault(user_id, []).append(
                PasswordHistoryEntry(user_id=user_id, password_hash=password_hash, changed_at=now)
            )
            self._persist_state()

    def list_failed_attempts(self, user_id: str) -> List[FailedAttemptRecord]:
        with self._data_lock:
            return [replace(r) for r in self.failed_attempts.get(user_id, [])]

    def list_failed_attempts_since(self, since: datetime) -> List[FailedAttemptRecord]:
        with self._data_lock:
            return [
                replace(r)
                for records in self.failed_attempts.values()
                for r in records
                if r.last_attempt_at >= since
            ]

    # sessions

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next((s for s in self.sessions.values() if s.token == token), None)
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            found = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(found, key=lambda s: s.created_at, reverse=True)

    def replace_session_token(
        self,
        session_id: str,
        expected_token: str,
        new_token: str,
        new_expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked or sess.token != expected_token:
                return None
            sess.token = new_token
            sess.expires_at = new_expires_at
            sess.last_activity_at = now
            self._persist_state()
            return replace(sess)

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_activity_at = now
            self._persist_state()

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked:
                return False
            sess.revoked = True
            sess.revoked_at = now
            self._persist_state()
            return True

    def revoke_user_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            revoked = []
            for sess in self.sessions.values():
                if sess.user_id == user_id and not sess.revoked:
                    sess.revoked = True
                    sess.revoked_at = now
                    revoked.append(replace(sess))
            if revoked:
                self._persist_state()
            return revoked

    # security config

    def get_security_config(self) -> Dict[str, Any]:
        with self._data_lock:
            return dict(self.security_config)

    def save_security_config(self, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._data_lock:
            self.security_config.update(values)
            self._persist_state()
            return dict(self.security_config)

    # units of work

    def run_exclusive(self, user_id: str, work: Callable[[_MemoryUserTransaction], T]) -> T:
        """Run ``work`` with every collection locked, rolling back on error."""
        with self._data_lock:
            snapshot = self._snapshot()
            try:
                result = work(_MemoryUserTransaction(self, user_id))
            except Exception:
                self._restore(snapshot)
                raise
            self._persist_state()
            return result

    def _snapshot(self) -> dict:
        return {
            "users": copy.deepcopy(self.users),
            "credentials": copy.deepcopy(self.credentials),
            "failed_attempts": copy.deepcopy(self.failed_attempts),
            "sessions": copy.deepcopy(self.sessions),
            "mfa_challenges": copy.deepcopy(self.mfa_challenges),
        }

    def _restore(self, snapshot: dict) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    # persistence

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [self._serialize_credential(c) for c in self.credentials.values()],
            "password_history": [
                self._serialize_history_entry(e)
                for entries in self.password_history.values()
                for e in entries
            ],
            "failed_attempts": [
                self._serialize_failed_attempt(r)
                for records in self.failed_attempts.values()
                for r in records
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "mfa_challenges": [
                self._serialize_challenge(c) for c in self.mfa_challenges.values()
            ],
            "security_config": self.security_config,
        }
        path = self._state_path()
        # temp file then rename; a reader never sees a half-written snapshot
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".memory_store_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            Path(tmp_path).unlink(missing_ok=True)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: self._deserialize_credential(c) for c in data.get("credentials", [])
        }
        self.password_history = {}
        for raw in data.get("password_history", []):
            entry = self._deserialize_history_entry(raw)
            self.password_history.setdefault(entry.user_id, []).append(entry)
        self.failed_attempts = {}
        for raw in data.get("failed_attempts", []):
            record = self._deserialize_failed_attempt(raw)
            self.failed_attempts.setdefault(record.user_id, []).append(record)
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.mfa_challenges = {}
        for raw in data.get("mfa_challenges", []):
            challenge = self._deserialize_challenge(raw)
            self.mfa_challenges[challenge_key(challenge.user_id, challenge.purpose)] = challenge
        self.security_config = data.get("security_config", {})
        return True

    def _serialize_user(self, user: User) -> dict:
        data = asdict(user)
        data["created_at"] = self._serialize_datetime(user.created_at)
        data["email_verification_expires_at"] = self._serialize_datetime(
            user.email_verification_expires_at
        )
        return data

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            phone=data.get("phone"),
            role=data.get("role", "customer"),
            status=data.get("status", "pending"),
            mfa_enabled=data.get("mfa_enabled", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            email_verification_token=data.get("email_verification_token"),
            email_verification_expires_at=self._deserialize_datetime(
                data.get("email_verification_expires_at")
            ),
            meta=data.get("meta"),
        )

    def _serialize_credential(self, cred: Credential) -> dict:
        data = asdict(cred)
        data["last_changed_at"] = self._serialize_datetime(cred.last_changed_at)
        return data

    def _deserialize_credential(self, data: dict) -> Credential:
        return Credential(
            user_id=data["user_id"],
            password_hash=data["password_hash"],
            last_changed_at=self._deserialize_datetime(data["last_changed_at"]),
            max_failed_attempts=data.get("max_failed_attempts"),
            requires_change=data.get("requires_change", False),
        )

    def _serialize_history_entry(self, entry: PasswordHistoryEntry) -> dict:
        return {
            "user_id": entry.user_id,
            "password_hash": entry.password_hash,
            "changed_at": self._serialize_datetime(entry.changed_at),
        }

    def _deserialize_history_entry(self, data: dict) -> PasswordHistoryEntry:
        return PasswordHistoryEntry(
            user_id=data["user_id"],
            password_hash=data["password_hash"],
            changed_at=self._deserialize_datetime(data["changed_at"]),
        )

    def _serialize_failed_attempt(self, record: FailedAttemptRecord) -> dict:
        data = asdict(record)
        for key in ("first_attempt_at", "last_attempt_at", "resolved_at"):
            data[key] = self._serialize_datetime(getattr(record, key))
        return data

    def _deserialize_failed_attempt(self, data: dict) -> FailedAttemptRecord:
        return FailedAttemptRecord(
            id=data["id"],
            user_id=data["user_id"],
            attempts=int(data["attempts"]),
            first_attempt_at=self._deserialize_datetime(data["first_attempt_at"]),
            last_attempt_at=self._deserialize_datetime(data["last_attempt_at"]),
            ip=data.get("ip"),
            resolved=data.get("resolved", False),
            lockout=data.get("lockout", False),
            resolved_at=self._deserialize_datetime(data.get("resolved_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        data = asdict(session)
        for key in ("created_at", "expires_at", "last_activity_at", "revoked_at"):
            data[key] = self._serialize_datetime(getattr(session, key))
        return data

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_activity_at=self._deserialize_datetime(data["last_activity_at"]),
            role=data.get("role", "customer"),
            refresh_eligible=data.get("refresh_eligible", True),
            ip=data.get("ip"),
            client_id=data.get("client_id"),
            client_class=data.get("client_class", "interactive"),
            revoked=data.get("revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )

    def _serialize_challenge(self, challenge: MfaChallenge) -> dict:
        data = asdict(challenge)
        data["expires_at"] = self._serialize_datetime(challenge.expires_at)
        data["created_at"] = self._serialize_datetime(challenge.created_at)
        return data

    def _deserialize_challenge(self, data: dict) -> MfaChallenge:
        return MfaChallenge(
            id=data["id"],
            user_id=data["user_id"],
            code=data["code"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            purpose=data.get("purpose", "login"),
            attempts_remaining=int(data.get("attempts_remaining", 0)),
            valid=data.get("valid", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
