import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from siteledger.api.v1.api import api_router
from siteledger.core.config import settings
from siteledger.core.errors import LedgerError
from siteledger.core.events import EventBus, EventType, log_large_expense
from siteledger.core.locks import KeyedLock
from siteledger.core.logging import setup_logging
from siteledger.db.mongo import close_mongo_connection, connect_to_mongo, get_db
from siteledger.repositories.interface import LedgerStore
from siteledger.repositories.mongo_store import MongoLedgerStore

logger = logging.getLogger(__name__)


def build_event_bus() -> EventBus:
    bus = EventBus()
    bus.subscribe(EventType.TRANSACTION_CREATED, log_large_expense(settings.LARGE_EXPENSE_THRESHOLD_CENTS))
    return bus


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    logger.info("%s %s rejected: %s %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(store: Optional[LedgerStore] = None, bus: Optional[EventBus] = None) -> FastAPI:
    """Build the API. Without a store, MongoDB is connected on startup."""
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if store is None:
            await connect_to_mongo()
            app.state.store = MongoLedgerStore(get_db())
        yield
        if store is None:
            await close_mongo_connection()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.PROJECT_VERSION,
        description=settings.DESCRIPTION,
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.bus = bus or build_event_bus()
    app.state.locks = KeyedLock()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LedgerError, ledger_error_handler)

    @app.get("/")
    async def root():
        return {"message": f"Welcome to {settings.PROJECT_NAME}"}

    app.include_router(api_router, prefix=settings.API_V1_STR)
    return app


app = create_app()
