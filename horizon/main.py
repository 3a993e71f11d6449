# horizon/main.py
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from horizon.core.config import get_settings
from horizon.core.dependencies import build_sync_engine
from horizon.core.errors import LocalStorageError
from horizon.core.supabase_client import create_supabase_client
from horizon.database import build_engine, create_db_and_tables, open_local_session
from horizon.services.sync_engine import HybridSyncEngine

# Routers
from horizon.routers.users import router as users_router
from horizon.routers.sessions import router as sessions_router
from horizon.routers.premium import router as premium_router
from horizon.routers.status import router as status_router

settings = get_settings()

logging.basicConfig(level=settings.LOG_LEVEL.upper())
logger = logging.getLogger("uvicorn")


async def local_storage_error_handler(request: Request, exc: LocalStorageError):
    """Local failures block the operation: surface them as 500."""
    logger.error(f"Local storage error: {exc} - {request.url}")
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc), "path": str(request.url.path)},
    )


def create_app(sync_engine: HybridSyncEngine | None = None) -> FastAPI:
    """
    Build the API around one sync engine.

    Without `sync_engine` the lifespan wires one from settings (SQLite file
    in DATA_DIR, Supabase / CloudKit when configured). Tests pass a
    pre-built engine instead.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
          - open the local store and create tables
          - build the engine for the configured platform, load the user

        Shutdown:
          - stop background sync and release clients / DB handles
        """
        db_engine = None
        local_session = None
        engine = sync_engine

        if engine is None:
            logger.info("🔄 Startup: opening local store...")
            try:
                db_engine = build_engine(settings.database_url)
                create_db_and_tables(db_engine)
            except Exception as e:
                logger.error(f"❌ Startup: local store FAILED: {e}")
                raise
            local_session = open_local_session(db_engine)
            supabase = await create_supabase_client(settings)
            engine = build_sync_engine(settings, local_session, supabase)

        await engine.start()
        app.state.engine = engine
        logger.info("✅ Startup: sync engine ready.")
        try:
            yield
        finally:
            await engine.close()
            if local_session is not None:
                local_session.close()
            if db_engine is not None:
                db_engine.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(LocalStorageError, local_storage_error_handler)

    # Versioned API prefix, e.g. /api/v1
    app.include_router(users_router, prefix=settings.API_V1_STR)
    app.include_router(sessions_router, prefix=settings.API_V1_STR)
    app.include_router(premium_router, prefix=settings.API_V1_STR)
    app.include_router(status_router, prefix=settings.API_V1_STR)

    @app.get("/")
    def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "horizon-sync"}

    return app


app = create_app()
