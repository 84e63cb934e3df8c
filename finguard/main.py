"""FinGuard - FastAPI application wiring."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from finguard import __version__
from finguard.api.dependencies import register_exception_handlers
from finguard.config import Settings, get_settings
from finguard.core.engine import AuthEngine
from finguard.core.logging import get_logger, setup_logging
from finguard.database import close_db, get_session_maker, init_db

logger = get_logger(__name__)


def create_app(settings: Settings | None = None, engine: AuthEngine | None = None) -> FastAPI:
    """Build the application.

    Routers of the host application mount on the returned app; the engine is
    available to them as ``app.state.auth_engine``.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        # Startup
        setup_logging(json_output=settings.log_json, level=settings.log_level)
        auth_engine = engine
        if auth_engine is None:
            await init_db()
            auth_engine = AuthEngine(settings=settings, session_maker=get_session_maker())
        app.state.auth_engine = auth_engine
        await auth_engine.start()
        logger.info("FinGuard started", environment=settings.environment)
        yield
        # Shutdown
        await auth_engine.stop()
        if engine is None:
            await close_db()

    app = FastAPI(
        title="FinGuard",
        description="Authentication and session security engine",
        version=__version__,
        lifespan=lifespan,
    )
    register_exception_handlers(app)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app
