from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger

from cafe_loyalty_api.core.settings import settings
from cafe_loyalty_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import LedgerJobScheduler


APP_VERSION = "0.1.0"
SERVICE_NAME = "cafe-loyalty-api"


def _session_factory():
    return async_session()


def _resolve_schedule_path() -> Path:
    schedule_path = Path(settings.ledger_job_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


@asynccontextmanager
async def lifespan(app: FastAPI):
    schedule_path = _resolve_schedule_path()
    job_scheduler = LedgerJobScheduler(
        session_factory=_session_factory,
        config_path=schedule_path,
    )
    app.state.ledger_job_scheduler = job_scheduler

    scheduler_enabled = settings.ledger_job_scheduler_enabled
    if scheduler_enabled:
        try:
            job_scheduler.start()
        except (FileNotFoundError, ValueError) as exc:
            logger.exception("Ledger job scheduler failed to start", error=str(exc))
        else:
            logger.info("Ledger job scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info(
            "Ledger job scheduler disabled",
            reason="ledger_job_scheduler_enabled is false",
        )

    try:
        yield
    finally:
        if job_scheduler.is_running:
            await job_scheduler.stop()


def create_app() -> FastAPI:
    """Application factory for the café loyalty ledger service."""
    configure_logging(
        service_name=SERVICE_NAME,
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
        json_logs=settings.log_json,
    )

    app = FastAPI(
        title="Café Loyalty API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    if settings.tracing_enabled:
        configure_tracing(
            app,
            service_name=SERVICE_NAME,
            service_version=APP_VERSION,
            environment=settings.environment,
        )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
