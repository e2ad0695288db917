from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shopauth.api.error_handling import register_exception_handlers
from shopauth.api.routes import RENEWED_TOKEN_HEADER, router
from shopauth.config import Settings
from shopauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from shopauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except (OSError, RuntimeError) as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Shop Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # local storefront dev servers; no wildcard since cookies are credentials
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", RENEWED_TOKEN_HEADER],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with a correlation id.

    The id comes from the client's X-Request-ID header when present and is
    echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # tokens travel in bodies and headers; nothing here may be cached
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


app.include_router(router)
register_exception_handlers(app)


async def _check_component(component: str, check: Callable[[], None]) -> bool:
    """Run a blocking connectivity check off the event loop, bounded in time."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("health_check_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return False
    except Exception as exc:  # pragma: no cover - any failure marks the component down
        logger.warning("health_check_failed", component=component, error=str(exc))
        return False
    return True


def _state_dir_writable(root: Path) -> None:
    # memory-store snapshots and the generated JWT secret live here
    marker = root / ".healthz"
    marker.write_text(datetime.now(timezone.utc).isoformat())
    marker.unlink(missing_ok=True)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report whether the credential store, the shared cache and the state dir respond."""
    from shopauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    verify_store = getattr(runtime.store, "verify_connection", None)
    if verify_store is None:
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        store_ok = await _check_component("database", verify_store)
        checks["database"] = {"status": "healthy" if store_ok else "unhealthy", "type": "postgres"}

    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        cache_ok = await _check_component("redis", runtime.cache.verify_connection)
        # the store stays authoritative; an unreachable cache only degrades
        checks["redis"] = {"status": "healthy" if cache_ok else "degraded"}

    state_root = Path(runtime.settings.shared_fs_root)
    state_ok = await _check_component("state_dir", lambda: _state_dir_writable(state_root))
    checks["state_dir"] = {"status": "healthy" if state_ok else "unhealthy"}

    healthy = all(check["status"] in ("healthy", "not_configured", "degraded") for check in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
