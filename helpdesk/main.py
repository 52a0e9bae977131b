import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from helpdesk.api.errors import register_exception_handlers
from helpdesk.api.routes import admin, assignments, health, tickets
from helpdesk.core.config import Settings, get_settings
from helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from helpdesk.workflow import (
    DatabaseNotifier,
    LoggingNotifier,
    Notifier,
    SqlFactoryDirectory,
    SqlUserDirectory,
    TicketRepository,
    TicketWorkflowService,
)


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    return dsn


def build_workflow_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    engine: AsyncEngine | None = None,
) -> TicketWorkflowService:
    notifier: Notifier
    if settings.notifier_backend == "logging":
        notifier = LoggingNotifier()
    else:
        notifier = DatabaseNotifier(session_factory)
    return TicketWorkflowService(
        TicketRepository(session_factory, engine=engine),
        users=SqlUserDirectory(session_factory),
        factories=SqlFactoryDirectory(session_factory),
        notifier=notifier,
        ticket_number_prefix=settings.ticket_number_prefix,
        ticket_number_max_attempts=settings.ticket_number_max_attempts,
        self_assign_max_workload=settings.self_assign_max_workload,
        auto_assign_default_batch=settings.auto_assign_default_batch,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.workflow_service = None
    db_engine = create_async_engine(_to_asyncpg_dsn(settings.postgres_dsn), future=True)
    try:
        session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
        service = build_workflow_service(settings, session_factory, engine=db_engine)
        await service.repository.ensure_schema()
        app.state.workflow_service = service
    except (SQLAlchemyError, OSError):
        logging.getLogger(__name__).exception("Ticket workflow service could not be initialised")
    try:
        yield
    finally:
        await db_engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(health.router)
    app.include_router(tickets.router)
    app.include_router(assignments.router)
    app.include_router(admin.router)
    return app


app = create_app()
