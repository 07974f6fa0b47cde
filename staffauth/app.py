from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Header
from fastapi.responses import JSONResponse

from staffauth.api.error_handling import register_exception_handlers
from staffauth.api.schemas import Envelope
from staffauth.logging import get_logger, set_correlation_id
from staffauth.service.auth import AuthContext

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the retention sweeps on startup and stop them on shutdown."""
    from staffauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        await runtime.start_background()
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Staff Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind X-Request-ID (or a fresh uuid) to the logging context and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)


async def current_auth(
    authorization: Optional[str] = Header(default=None),
) -> AuthContext:
    from staffauth.service.errors import AuthenticationError
    from staffauth.service.runtime import get_runtime

    ctx = await get_runtime().auth.authenticate(authorization, check_revocation=True)
    if ctx is None:
        raise AuthenticationError("invalid or missing access token")
    return ctx


def require_permission(permission: str) -> Callable[..., Any]:
    """Route dependency that admits only callers whose token carries ``permission``."""
    from staffauth.service.runtime import get_runtime

    async def _dependency(ctx: AuthContext = Depends(current_auth)) -> AuthContext:
        return get_runtime().auth.require_permission(ctx, permission)

    return _dependency


@app.get("/healthz")
async def health() -> JSONResponse:
    from staffauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    store = runtime.store
    if hasattr(store, "_connect"):

        def _db_probe() -> None:
            with store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        try:
            await asyncio.wait_for(asyncio.to_thread(_db_probe), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["database"] = {"status": "healthy", "type": "postgres"}
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            checks["database"] = {"status": "unhealthy", "type": "postgres"}
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    checks["sweeps"] = {
        sweep.name: {
            "running": sweep.running,
            "consecutive_failures": sweep.consecutive_failures,
        }
        for sweep in runtime.sweeps
    }
    healthy = checks["database"]["status"] == "healthy"
    envelope = Envelope(
        status="ok",
        data={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )
    return JSONResponse(status_code=200 if healthy else 503, content=envelope.model_dump())
