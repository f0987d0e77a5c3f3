from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from timetrack.core.config import Settings
from timetrack.core.errors import (
    ApiError,
    api_error_handler,
    catch_unhandled_exceptions,
    http_exception_handler,
    validation_exception_handler,
)
from timetrack.core.logging import configure_logging, log_requests
from timetrack.database import create_db_engine, dispose_engine
from timetrack.routers.erp import router as erp_router
from timetrack.routers.time_entries import router as time_entries_router
from timetrack.routers.users import router as users_router
from timetrack.services.schema_manager import SchemaManager
from timetrack.services.spire_client import SpireClient
from timetrack.services.time_entry_store import TimeEntryStore
from timetrack.services.user_store import UserStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "Time Tracking API"


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(app.state.settings.log_level)
    settings: Settings = app.state.settings

    engine = None
    if app.state.time_entries is None or app.state.users is None:
        engine = create_db_engine(settings.database_url)

        schema = SchemaManager(
            engine,
            time_entries_table=settings.time_entries_table,
            users_table=settings.users_table,
        )
        for kind, result in schema.ensure_all().items():
            if not result.success:
                # Keep serving; store calls report their own errors.
                logger.error("Schema ensure failed", extra={"kind": kind, "error": result.error})

        if app.state.time_entries is None:
            app.state.time_entries = TimeEntryStore(engine, settings.time_entries_table)
        if app.state.users is None:
            app.state.users = UserStore(engine, settings.users_table)

    owned_spire = None
    if app.state.spire is None:
        owned_spire = app.state.spire = SpireClient.from_settings(settings)

    logger.info(
        "Service started",
        extra={
            "environment": settings.environment,
            "tables": [settings.time_entries_table, settings.users_table],
        },
    )
    try:
        yield
    finally:
        if owned_spire is not None:
            await owned_spire.aclose()
        dispose_engine(engine)


def create_app(
    settings: Optional[Settings] = None,
    *,
    time_entries: Optional[TimeEntryStore] = None,
    users: Optional[UserStore] = None,
    spire: Optional[SpireClient] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    app = FastAPI(
        title=SERVICE_NAME,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.time_entries = time_entries
    app.state.users = users
    app.state.spire = spire

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Added first, so it runs inside the request logger and the 500 it returns is logged.
    app.middleware("http")(catch_unhandled_exceptions)
    app.middleware("http")(log_requests)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(time_entries_router)
    app.include_router(users_router)
    app.include_router(erp_router)

    @app.get("/")
    def root():
        return {"success": True, "message": f"{SERVICE_NAME} running"}

    @app.get("/api/health")
    def health(request: Request):
        current: Settings = request.app.state.settings
        return {
            "success": True,
            "message": "Server is running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": current.environment,
            "tables": {
                "time_entries": current.time_entries_table,
                "users": current.users_table,
            },
        }

    return app


app = create_app()
