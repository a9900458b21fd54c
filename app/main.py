from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os

from app.config import settings

from app.routers import auth, health, subscriptions, talk
from app.core.database import init_db, close_db
from app.core.structured_logging import setup_logging
from app.core.errors import SelfTalkError
from app.core.errors.registry import error_registry
from app.core.errors.middleware import selftalk_error_handler, unhandled_exception_handler
from app.core.log_middleware import CorrelationMiddleware
from app.services.account_service import AccountService
from app.services.ledger_store import LedgerStore
from app.services.metering_engine import MeteringEngine
from app.services.metering_journal import MeteringJournal
from app.services.plan_catalog import PlanCatalog
from app.services.session_registry import SessionRegistry
from app.services.subscription_service import SubscriptionLifecycleManager
from app.services.tick_clock import TickClock

# Initialize structured logging before any logger calls
setup_logging(log_dir=settings.log_dir, log_file=settings.log_file, log_level=settings.log_level.upper())

logger = logging.getLogger(__name__)

# API metadata
API_TITLE = "SelfTalk API"
API_VERSION = "0.3.0"

API_DESCRIPTION = """
## SelfTalk - Voice Companion Backend

Accounts, subscription plans and real-time talk-time metering.

### Authentication

Register or log in to obtain an access token, then send it as
`Authorization: Bearer <token>`. The talk WebSocket takes it as
`/ws/talk?token=<token>`.

### Talk time

Every plan grants voice minutes per monthly cycle; top-up minutes are kept
across cycles and spent after plan minutes. While a call is live the balance
counts down once per second over the WebSocket.
"""

TAGS_METADATA = [
    {"name": "health", "description": "Liveness and component checks"},
    {"name": "auth", "description": "Registration, login, logout"},
    {"name": "subscriptions", "description": "Plans, purchases, top-ups, expiry"},
    {"name": "admin", "description": "Plan template management (admin role)"},
    {"name": "talk", "description": "Metered call WebSocket"},
]


def _require_single_worker() -> None:
    """Live sessions are process-local; two workers would meter the same user twice."""
    web_concurrency = int(os.environ.get("WEB_CONCURRENCY", "1"))
    uvicorn_workers = int(os.environ.get("UVICORN_WORKERS", "1"))
    if web_concurrency > 1 or uvicorn_workers > 1:
        logger.critical(
            "Metering requires single-worker mode but WEB_CONCURRENCY=%s, UVICORN_WORKERS=%s",
            web_concurrency, uvicorn_workers,
        )
        raise RuntimeError("Metering requires single-worker mode")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Wires services onto app.state, recovers interrupted calls, drains
    live sessions on shutdown.
    """
    logger.info("Starting SelfTalk API v%s (%s)...", API_VERSION, settings.environment)

    error_registry.load()
    _require_single_worker()

    init_db()
    logger.info("Database initialized")

    plan_catalog = PlanCatalog()
    plan_catalog.seed_default_plans()

    store = LedgerStore()
    journal = MeteringJournal()
    registry = SessionRegistry()
    lifecycle = SubscriptionLifecycleManager(store, plan_catalog)
    engine = MeteringEngine(
        store,
        registry,
        journal,
        clock=app.state.tick_clock,
        tick_interval_s=app.state.tick_interval_s,
    )

    app.state.plan_catalog = plan_catalog
    app.state.ledger_store = store
    app.state.session_registry = registry
    app.state.lifecycle = lifecycle
    app.state.account_service = AccountService(lifecycle)
    app.state.metering_engine = engine

    recovered = engine.recover_open_sessions()
    if recovered:
        logger.warning("Recovered %d metering session(s) interrupted by a previous shutdown", recovered)

    yield

    logger.info("Shutting down SelfTalk API...")
    await engine.shutdown()
    close_db()


def create_app(clock: Optional[TickClock] = None, tick_interval_s: Optional[float] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``clock`` and ``tick_interval_s`` override the metering tick source
    (tests pass a ManualTickClock or a short interval).
    """
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        openapi_tags=TAGS_METADATA,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.tick_clock = clock
    app.state.tick_interval_s = tick_interval_s

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (request_id + correlation_id in every log)
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(SelfTalkError, selftalk_error_handler)
    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
    app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["subscriptions"])
    app.include_router(subscriptions.admin_router, prefix="/api/admin", tags=["admin"])
    app.include_router(talk.router, tags=["talk"])

    return app


app = create_app()
