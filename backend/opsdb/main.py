# backend/opsdb/main.py
import logging
import os
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .apps.events.broker import EventBroker
from .apps.events.router import router as events_router
from .apps.inventory.engine import InventoryEngine
from .apps.inventory.router import router as inventory_router
from .database import build_engine, build_session_factory

logger = logging.getLogger(__name__)


def _allowed_origins() -> List[str]:
    """
    Parse CORS_ALLOWED_ORIGINS from env.

    Accepts comma-separated origins. If unset, defaults to local dev ports.
    """
    raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if raw:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
        if origins:
            return origins
    return [
        "http://127.0.0.1:5173",
        "http://localhost:5173",
        "http://localhost:4173",
    ]


def create_app(database_url: Optional[str] = None) -> FastAPI:
    """
    Build the API with its own engine, session factory and event broker.

    A missing or empty database URL raises ConfigurationError here, before
    any request or transaction.
    """
    db_engine = build_engine(database_url)
    session_factory = build_session_factory(db_engine)
    broker = EventBroker()

    app = FastAPI(title="OpsDB Stock Ledger API", version="1.0.0")
    app.state.db_engine = db_engine
    app.state.session_factory = session_factory
    app.state.broker = broker
    app.state.inventory_engine = InventoryEngine(session_factory, publisher=broker.publish)

    cors_origins = _allowed_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials="*" not in cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/", tags=["health"])
    def read_root():
        return {"status": "ok", "message": "OpsDB stock ledger is running"}

    @app.get("/health", tags=["health"])
    def health():
        return {"status": "ok"}

    app.include_router(inventory_router)
    app.include_router(events_router)

    logger.info("Application created", extra={"dialect": db_engine.dialect.name})
    return app
