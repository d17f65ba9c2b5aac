from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi.middleware import SlowAPIMiddleware

from aptdesk.api.errors import register_exception_handlers
from aptdesk.api.routes import complaints, monitoring, ping, realtime
from aptdesk.complaints.notifications import LifecycleOrchestrator
from aptdesk.complaints.repository import InMemoryComplaintRepository, PostgresComplaintRepository
from aptdesk.complaints.service import ComplaintService
from aptdesk.complaints.staff import InMemoryStaffDirectory, PostgresStaffDirectory
from aptdesk.core.config import Settings, get_settings
from aptdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from aptdesk.metrics import metrics_registry
from aptdesk.middleware.rate_limit import build_limiter
from aptdesk.middleware.rbac import RBACMiddleware
from aptdesk.realtime import ConnectionManager
from aptdesk.services.postgres import PostgresPool


async def _build_stores(app: FastAPI, settings: Settings):
    if settings.storage_backend == "memory":
        app.state.postgres = None
        return InMemoryComplaintRepository(), InMemoryStaffDirectory()

    database = PostgresPool(
        dsn=settings.postgres_dsn,
        min_size=settings.postgres_pool_min_size,
        max_size=settings.postgres_pool_max_size,
    )
    app.state.postgres = database
    pool = await database.get_pool()
    staff_directory = PostgresStaffDirectory(pool)
    await staff_directory.ensure_schema()
    return PostgresComplaintRepository(pool), staff_directory


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings: Settings = app.state.settings
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.metrics_registry = metrics_registry
    app.state.connection_manager = ConnectionManager()
    app.state.complaint_service = None
    app.state.postgres = None
    try:
        repository, staff_directory = await _build_stores(app, settings)
        orchestrator = LifecycleOrchestrator(
            staff_directory, app.state.connection_manager, metrics=metrics_registry
        )
        service = ComplaintService(
            repository,
            orchestrator,
            max_write_attempts=settings.max_write_attempts,
            max_active_complaints=settings.max_active_complaints,
            reopen_window_days=settings.reopen_window_days,
            metrics=metrics_registry,
        )
        await service.ensure_schema()
        app.state.staff_directory = staff_directory
        app.state.complaint_service = service
        logger.info("Complaint service ready", extra={"storage_backend": settings.storage_backend})
    except Exception:
        logger.exception("Complaint service initialisation failed; requests will receive 503")
    try:
        yield
    finally:
        if app.state.postgres is not None:
            await app.state.postgres.close()
        shutdown_tracer(tracer_provider)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.limiter = build_limiter(settings)

    register_exception_handlers(app)
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(RBACMiddleware, tokens=settings.api_tokens)

    app.include_router(ping.router)
    app.include_router(monitoring.router)
    app.include_router(complaints.router)
    app.include_router(realtime.router)
    return app


app = create_app()
