"""
OIDC Provider application.
Discovery, JWKS, GET /authorize, POST /token, GET|POST /userinfo, POST /revoke, POST /login.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from oidc_provider.audit import router as audit_router
from oidc_provider.authorize import router as authorize_router
from oidc_provider.config import ProviderConfig, load_config
from oidc_provider.context import build_context
from oidc_provider.errors import ProtocolError, StoreUnavailableError
from oidc_provider.revoke import router as revoke_router
from oidc_provider.session import router as session_router
from oidc_provider.subjects import seed_from_env
from oidc_provider.token_endpoint import router as token_router
from oidc_provider.userinfo import router as userinfo_router
from oidc_provider.well_known import router as well_known_router

logger = logging.getLogger(__name__)


async def _purge_loop(ctx, interval: int) -> None:
    """Opportunistic reclamation of expired credentials and idle rate-limit keys; correctness never depends on it."""
    while True:
        await asyncio.sleep(interval)
        ctx.token_limiter.prune()
        ctx.login_limiter.prune()
        try:
            await run_in_threadpool(ctx.store.purge_expired)
        except StoreUnavailableError:
            logger.warning("Expired credential purge skipped: store unavailable")


def create_app(config: ProviderConfig | None = None) -> FastAPI:
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Load signing key, create tables, seed a subject from env, start the purge task."""
        ctx = build_context(config)
        app.state.provider = ctx
        db = ctx.session_factory()
        try:
            seed_from_env(db)
        finally:
            db.close()
        purge_task = None
        if config.purge_interval_seconds > 0:
            purge_task = asyncio.create_task(_purge_loop(ctx, config.purge_interval_seconds))
        logger.info("OIDC provider ready: issuer=%s kid=%s clients=%d", config.issuer, ctx.keys.kid, len(config.clients))
        yield
        if purge_task is not None:
            purge_task.cancel()
            with suppress(asyncio.CancelledError):
                await purge_task
        ctx.engine.dispose()

    app = FastAPI(title="OIDC Provider", version="1.0.0", lifespan=lifespan)
    app.include_router(well_known_router, tags=["well-known"])
    app.include_router(session_router, tags=["login"])
    app.include_router(authorize_router, tags=["authorize"])
    app.include_router(token_router, tags=["token"])
    app.include_router(userinfo_router, tags=["userinfo"])
    app.include_router(revoke_router, tags=["revoke"])
    app.include_router(audit_router)

    @app.exception_handler(ProtocolError)
    async def protocol_error_handler(request: Request, exc: ProtocolError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        logger.error("Store unavailable while handling %s %s", request.method, request.url.path)
        return JSONResponse(
            {"error": "server_error", "error_description": "Temporarily unable to process the request"},
            status_code=500,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
        return JSONResponse(
            {"error": "invalid_request", "error_description": f"Invalid or missing parameter(s): {', '.join(fields)}"},
            status_code=400,
        )

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "oidc_provider"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=os.environ.get("OIDC_LOG_LEVEL", "INFO"))
    uvicorn.run(
        "oidc_provider.main:app",
        host="127.0.0.1",
        port=9000,
        reload=True,
    )
