# main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskmail import database
from taskmail.clock import Clock, get_zone
from taskmail.config import Settings, get_settings
from taskmail.crud import ExecutionLogStore, TaskStore, UserDirectory
from taskmail.errors import InvalidScheduleError, NotFoundError, StoreError
from taskmail.features.reminders import TaskScheduler
from taskmail.logging import RequestLoggingMiddleware, init_logging
from taskmail.routes import router
from taskmail.services.task_service import TaskServices
from taskmail.utils.notifier import NotificationSender, build_sender

logger = logging.getLogger("taskmail.main")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def create_app(
    settings: Optional[Settings] = None,
    *,
    sender: Optional[NotificationSender] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    settings = settings or get_settings()
    # Fail fast on a bad default zone rather than on the first request.
    get_zone(settings.default_timezone)

    # -----------------------------------------------------------------------
    # App lifespan (startup/shutdown)
    # -----------------------------------------------------------------------
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown tasks."""
        logger.info("Startup: initializing database...")
        try:
            session_factory = await database.init_db_async(settings.database_url)
            logger.info("Connected to database: %s", database.get_database_dsn())
        except Exception as e:
            logger.critical("Database initialization failed: %s", e)
            raise  # no database, no app

        tasks = TaskStore(session_factory)
        logs = ExecutionLogStore(session_factory)
        scheduler = TaskScheduler(
            tasks,
            logs,
            UserDirectory(session_factory),
            sender or build_sender(settings),
            clock=clock,
            send_timeout=settings.notification_timeout_seconds,
        )
        app.state.services = TaskServices(
            tasks=tasks,
            logs=logs,
            scheduler=scheduler,
            default_timezone=settings.default_timezone,
        )

        if settings.scheduler_enabled:
            logger.info("Startup: starting task scheduler...")
            scheduler.start()
            # Triggers live only in memory; rebuild them from the store.
            await scheduler.recover()
        else:
            logger.info("Task scheduler disabled (SCHEDULER_ENABLED=false)")

        yield  # app runs during this block

        logger.info("Shutdown: stopping task scheduler...")
        try:
            await scheduler.shutdown()
        except Exception as e:
            logger.error("Error stopping task scheduler: %s", e)

        logger.info("Shutdown: closing database connection pool...")
        try:
            await database.shutdown_db_async()
            logger.info("Cleanup complete.")
        except Exception as e:
            logger.error("Error during shutdown cleanup: %s", e)

    app = FastAPI(
        title="Taskmail - Scheduled Task Reminders",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Error mapping
    # -----------------------------------------------------------------------
    @app.exception_handler(InvalidScheduleError)
    async def invalid_schedule_handler(request: Request, exc: InvalidScheduleError):
        logger.warning("Rejected schedule on %s: %s", request.url.path, exc)
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error("Store error on %s: %s", request.url.path, exc)
        return _error(503, "Storage unavailable")

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"success": False, "message": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def server_error_handler(request: Request, exc: Exception):
        logger.exception("Server error on %s", request.url.path)
        return _error(500, "Server error")

    # -----------------------------------------------------------------------
    # Base Routes
    # -----------------------------------------------------------------------
    @app.get("/", tags=["Health"])
    async def root(request: Request):
        """Basic health check to verify the service is running."""
        services = getattr(request.app.state, "services", None)
        running = bool(services and services.scheduler.running)
        return {"status": "ok", "message": "Taskmail is running.", "scheduler_running": running}

    app.include_router(router)
    return app


def run() -> None:
    import uvicorn

    uvicorn.run("taskmail.main:app", host="0.0.0.0", port=get_settings().port)


# ---------------------------------------------------------------------------
# Logging setup + FastAPI Application
# ---------------------------------------------------------------------------
init_logging()
app = create_app()
