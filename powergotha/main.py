from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware
import structlog

from . import config
from .db import init_db
from .gateway import default_gateway
from .log import configure_logging
from .notifications import EmailQueue
from .oauth import AuthStrategyRegistry, default_registry
from .responses import register_error_handlers
from .sms import default_sender
from . import auth, billing

logger = structlog.get_logger()


def create_app(strategies: AuthStrategyRegistry = None, gateway=None, notifier=None, sms=None,
               run_scheduler: bool = config.SCHEDULER_ENABLED) -> FastAPI:
    """Build the API with its collaborators; anything left as None gets the configured default."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db()
        scheduler = None
        if run_scheduler:
            from .scheduler import build_scheduler
            scheduler = build_scheduler()
            scheduler.start()
            logger.info("scheduler_started", timezone=config.SCHEDULER_TIMEZONE)
        logger.info("api_started", environment=config.ENVIRONMENT, oauth=app.state.strategies.names)
        yield
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        if hasattr(app.state.notifier, "shutdown"):
            app.state.notifier.shutdown(wait=False)
        logger.info("api_stopped")

    app = FastAPI(
        title="Powergotha API",
        lifespan=lifespan,
        docs_url=None if config.IS_PRODUCTION else "/docs",
        redoc_url=None,
    )
    app.state.strategies = strategies if strategies is not None else default_registry()
    app.state.gateway = gateway or default_gateway()
    app.state.notifier = notifier or EmailQueue()
    app.state.sms = sms or default_sender()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    @app.get("/health")
    def health():
        return JSONResponse({"ok": True})

    @app.get("/favicon.ico")
    def favicon():
        return PlainTextResponse("", status_code=204)

    app.include_router(auth.router)
    app.include_router(billing.router)
    return app


configure_logging()
app = create_app()
