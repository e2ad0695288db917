from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

from shopauth.config import Settings
from shopauth.logging import get_logger, log_audit_event
from shopauth.service.errors import (
    ForbiddenError,
    NotFoundError,
    SessionLimitReached,
    SessionNotFound,
    SessionRevoked,
    TokenExpired,
    TokenInvalid,
)
from shopauth.service.security_config import SecurityConfig, SecurityConfigProvider
from shopauth.storage.common import AuthStore, UserTransaction
from shopauth.storage.models import Session, User
from shopauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class VerifiedSession:
    claims: dict[str, Any]
    session: Session


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    role: str
    session_id: str
    token: str
    renewed: bool = False
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class RevokeOutcome:
    session_id: str
    user_id: str
    already_revoked: bool = False


class ClientClassPolicy:
    """Maps a client identifier to a session class.

    Interactive clients (browsers, apps) get short sliding sessions.
    Configured API clients, such as voice assistants, get long-lived
    sessions that are not renewed unless explicitly allowed.
    """

    def __init__(self, api_client_ids: List[str], *, api_refresh_eligible: bool = False) -> None:
        self.api_client_ids = {cid.strip().lower() for cid in api_client_ids if cid.strip()}
        self.api_refresh_eligible = api_refresh_eligible

    def classify(self, client_id: Optional[str]) -> str:
        if client_id and client_id.strip().lower() in self.api_client_ids:
            return "api"
        return "interactive"

    def lifetime(self, client_class: str, cfg: SecurityConfig) -> int:
        if client_class == "api":
            return cfg.api_session_lifetime
        return cfg.session_lifetime

    def refresh_eligible(self, client_class: str) -> bool:
        return client_class != "api" or self.api_refresh_eligible


class SessionManager:
    """Issues, verifies, renews and revokes bearer sessions.

    A token is an HS256 JWT whose ``sid`` names a session row; the row holds
    the exact token string currently valid for it. Renewal swaps the token
    on the same row, so a superseded token stops verifying immediately.
    """

    def __init__(
        self,
        store: AuthStore,
        config: SecurityConfigProvider,
        settings: Settings,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.settings = settings
        self.cache = cache
        self.policy = ClientClassPolicy(
            settings.api_client_ids,
            api_refresh_eligible=settings.api_clients_refresh_eligible,
        )
        self._leeway = timedelta(seconds=max(0, settings.token_leeway_seconds))

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # token codec

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        """Return the verified claims or raise TokenInvalid/TokenExpired."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid()
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid()
        # reject alg confusion (e.g. "none")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise TokenInvalid()
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenInvalid()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid()
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or not payload.get("sid") or not payload.get("sub"):
            raise TokenInvalid()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid()
        if exp_ts <= (self._now() - self._leeway).timestamp():
            raise TokenExpired()
        return payload

    def _mint(self, user_id: str, role: str, session_id: str, ttl_seconds: int, now: datetime) -> Tuple[str, datetime]:
        expires_at = now + timedelta(seconds=ttl_seconds)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "role": role,
            "sid": session_id,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    # lifecycle

    async def create(
        self,
        user: User,
        *,
        ip: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> Tuple[str, Session]:
        """Mint a token and persist its session, enforcing the per-role cap."""
        cfg = await self.config.current()
        now = self._now()
        client_class = self.policy.classify(client_id)
        ttl = self.policy.lifetime(client_class, cfg)
        session_id = str(uuid.uuid4())
        token, _ = self._mint(user.id, user.role, session_id, ttl, now)
        session = Session.new(
            user.id,
            token,
            ttl,
            session_id=session_id,
            role=user.role,
            refresh_eligible=self.policy.refresh_eligible(client_class),
            ip=ip,
            client_id=client_id,
            client_class=client_class,
            now=now,
        )
        cap = cfg.session_cap(user.role)

        def _work(txn: UserTransaction) -> bool:
            if txn.count_active_sessions(now) >= cap:
                return False
            txn.add_session(session)
            return True

        if not self.store.run_exclusive(user.id, _work):
            raise SessionLimitReached(detail={"limit": cap})
        log_audit_event(
            user.id,
            "session_created",
            f"{client_class} session created",
            session_id=session.id,
            ip=ip,
        )
        return token, session

    async def verify(self, token: str) -> VerifiedSession:
        claims = self._decode_jwt(token)
        if self.cache and await self.cache.is_session_revoked(str(claims["sid"])):
            raise SessionRevoked()
        session = self.store.get_session_by_token(token)
        if session is None:
            raise SessionNotFound()
        if session.revoked:
            raise SessionRevoked()
        if session.id != claims["sid"] or session.user_id != claims["sub"]:
            raise TokenInvalid()
        if session.expires_at <= self._now():
            raise TokenExpired()
        return VerifiedSession(claims=claims, session=session)

    async def renew_if_near_expiry(self, session: Session) -> str:
        """Return the token to use from now on.

        Inside the renewal window a fresh token replaces the old one on the
        same row; otherwise only the activity timestamp moves.
        """
        cfg = await self.config.current()
        now = self._now()
        remaining = (session.expires_at - now).total_seconds()
        if not session.refresh_eligible or remaining >= cfg.renewal_threshold:
            self.store.touch_session(session.id, now)
            return session.token

        ttl = self.policy.lifetime(session.client_class, cfg)
        new_token, new_expires_at = self._mint(session.user_id, session.role, session.id, ttl, now)
        updated = self.store.replace_session_token(
            session.id, session.token, new_token, new_expires_at, now
        )
        if updated is None:
            # lost the race to a concurrent renewal or a revoke
            current = self.store.get_session(session.id)
            if current is None:
                raise SessionNotFound()
            if current.revoked:
                raise SessionRevoked()
            return current.token
        log_audit_event(session.user_id, "session_renewed", "session token renewed", session_id=session.id)
        return new_token

    async def authenticate(self, token: Optional[str], *, required_role: Optional[str] = None) -> AuthContext:
        """Per-request check: verify, renew when close to expiry, enforce role."""
        if not token:
            raise SessionNotFound()
        verified = await self.verify(token)
        session = verified.session
        if required_role and not self._role_allows(session.role, required_role):
            raise ForbiddenError("insufficient role", detail={"required": required_role})
        current_token = await self.renew_if_near_expiry(session)
        renewed = current_token != token
        expires_at = session.expires_at
        if renewed:
            refreshed = self.store.get_session(session.id)
            expires_at = refreshed.expires_at if refreshed else expires_at
        return AuthContext(
            user_id=session.user_id,
            role=session.role,
            session_id=session.id,
            token=current_token,
            renewed=renewed,
            expires_at=expires_at,
        )

    async def revoke(self, token: str, *, actor_id: Optional[str] = None) -> RevokeOutcome:
        """Revoke the session holding ``token``.

        The row is found by the exact token string, so expired or otherwise
        unverifiable tokens can still be logged out. Revoking twice is a
        no-op success.
        """
        session = self.store.get_session_by_token(token)
        if session is None:
            raise SessionNotFound()
        if session.revoked:
            return RevokeOutcome(session.id, session.user_id, already_revoked=True)
        changed = self.store.revoke_session(session.id, self._now())
        if changed:
            await self._mark_revoked(session)
            log_audit_event(actor_id or session.user_id, "session_revoked", "session revoked", session_id=session.id)
        return RevokeOutcome(session.id, session.user_id, already_revoked=not changed)

    async def revoke_session(self, user_id: str, session_id: str) -> RevokeOutcome:
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        return await self.revoke(session.token, actor_id=user_id)

    async def revoke_all(self, user_id: str, *, actor_id: Optional[str] = None, reason: str = "all sessions revoked") -> int:
        revoked = self.store.revoke_user_sessions(user_id, self._now())
        for session in revoked:
            await self._mark_revoked(session)
        if revoked:
            log_audit_event(actor_id or user_id, "sessions_revoked", reason, target_user_id=user_id, count=len(revoked))
        return len(revoked)

    async def count_active(self, user_id: str) -> int:
        now = self._now()
        return self.store.run_exclusive(user_id, lambda txn: txn.count_active_sessions(now))

    async def list_active(self, user_id: str) -> List[Session]:
        now = self._now()
        return [s for s in self.store.list_user_sessions(user_id) if s.is_live(now)]

    async def _mark_revoked(self, session: Session) -> None:
        if self.cache:
            await self.cache.mark_session_revoked(session.id, session.expires_at)

    def _role_allows(self, role: str, required: str) -> bool:
        if role == required:
            return True
        return role == "admin" and required == "customer"

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
