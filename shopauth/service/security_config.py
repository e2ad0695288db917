from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from shopauth.config import Settings
from shopauth.logging import get_logger, log_audit_event
from shopauth.service.errors import BadRequestError
from shopauth.storage.common import AuthStore
from shopauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class SecurityConfig(BaseModel):
    """Security tunables. Lifetimes are in seconds."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    jwt_lifetime: int = Field(900, ge=300, le=2592000)
    session_lifetime: int = Field(900, ge=300, le=2592000)
    renewal_threshold: int = Field(300, ge=60, le=1800)
    otp_lifetime: int = Field(900, ge=60, le=1800)
    email_verification_lifetime: int = Field(86400, ge=300, le=2592000)
    max_failed_login_attempts: int = Field(5, ge=3, le=10)
    block_period_days: int = Field(30, ge=1, le=365)
    max_blocks_in_n_days: int = Field(5, ge=1, le=10)
    max_sessions_customer: int = Field(5, ge=1, le=50)
    max_sessions_admin: int = Field(2, ge=1, le=50)
    api_session_lifetime: int = Field(2592000, ge=300, le=31536000)
    password_rotation_days: int = Field(180, ge=1, le=3650)

    @model_validator(mode="after")
    def _renewal_inside_session(self) -> SecurityConfig:
        if self.renewal_threshold >= self.session_lifetime:
            raise ValueError("renewal_threshold must be shorter than session_lifetime")
        return self

    def session_cap(self, role: str) -> int:
        return self.max_sessions_admin if role == "admin" else self.max_sessions_customer


def defaults_from_settings(settings: Settings) -> Dict[str, Any]:
    return {
        "jwt_lifetime": settings.jwt_lifetime_seconds,
        "session_lifetime": settings.session_lifetime_seconds,
        "renewal_threshold": settings.renewal_threshold_seconds,
        "otp_lifetime": settings.otp_lifetime_seconds,
        "email_verification_lifetime": settings.email_verification_lifetime_seconds,
        "max_failed_login_attempts": settings.max_failed_login_attempts,
        "block_period_days": settings.block_period_days,
        "max_blocks_in_n_days": settings.max_blocks_in_n_days,
        "max_sessions_customer": settings.max_sessions_customer,
        "max_sessions_admin": settings.max_sessions_admin,
        "api_session_lifetime": settings.api_session_lifetime_seconds,
        "password_rotation_days": settings.password_rotation_days,
    }


class SecurityConfigProvider:
    """Read-mostly access to the effective security configuration.

    Persisted overrides are merged over the environment defaults. Reads are
    served from a short in-process cache, then the shared Redis copy, then
    the store; ``update`` invalidates both caches so other nodes pick up a
    change within ``security_config_cache_seconds``.
    """

    def __init__(
        self, store: AuthStore, settings: Settings, cache: Optional[RedisCache] = None
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self._defaults = SecurityConfig(**defaults_from_settings(settings))
        self._ttl = max(0, settings.security_config_cache_seconds)
        self._lock = threading.Lock()
        self._cached: Optional[SecurityConfig] = None
        self._cached_at = 0.0

    def defaults(self) -> SecurityConfig:
        return self._defaults

    def _merge(self, overrides: Dict[str, Any]) -> SecurityConfig:
        merged = self._defaults.model_dump()
        known = {k: v for k, v in overrides.items() if k in merged}
        try:
            return SecurityConfig(**{**merged, **known})
        except PydanticValidationError:
            logger.warning("security_config_overrides_invalid", fields=sorted(known))
        for key, value in overrides.items():
            if key not in merged:
                continue
            candidate = {**merged, key: value}
            try:
                SecurityConfig(**candidate)
            except PydanticValidationError:
                logger.warning("security_config_value_ignored", field=key, value=value)
                continue
            merged = candidate
        return SecurityConfig(**merged)

    async def current(self) -> SecurityConfig:
        with self._lock:
            if self._cached is not None and time.monotonic() - self._cached_at < self._ttl:
                return self._cached

        overrides: Optional[Dict[str, Any]] = None
        if self.cache:
            overrides = await self.cache.get_security_config()
        if overrides is None:
            overrides = self.store.get_security_config()
            if self.cache:
                await self.cache.set_security_config(overrides, max(1, self._ttl))
        config = self._merge(overrides)

        with self._lock:
            self._cached = config
            self._cached_at = time.monotonic()
        return config

    async def update(self, changes: Dict[str, Any], *, actor_id: Optional[str]) -> SecurityConfig:
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            raise BadRequestError("no security settings supplied")
        unknown = sorted(set(changes) - set(SecurityConfig.model_fields))
        if unknown:
            raise BadRequestError("unknown security settings", detail={"fields": unknown})
        current = await self.current()
        try:
            SecurityConfig(**{**current.model_dump(), **changes})
        except PydanticValidationError as exc:
            raise BadRequestError(
                "invalid security settings",
                detail={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

        persisted = self.store.save_security_config(
            {**changes, "updated_at": datetime.now(timezone.utc).isoformat()}
        )
        self.invalidate()
        if self.cache:
            await self.cache.invalidate_security_config()
        log_audit_event(
            actor_id,
            "security_config_update",
            "security configuration updated",
            fields=sorted(changes),
        )
        return self._merge(persisted)

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
            self._cached_at = 0.0
