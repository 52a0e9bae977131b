import io
import logging

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from conftest import ADMIN_ID, STAFF_A
from helpdesk.core.config import Settings
from helpdesk.core.logging import ContextFormatter, configure_logging, init_tracer, parse_headers, shutdown_tracer
from helpdesk.main import _to_asyncpg_dsn, build_workflow_service
from helpdesk.workflow import DatabaseNotifier, LoggingNotifier, StorageError


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("HELPDESK_TICKET_NUMBER_PREFIX", "FIX")
    monkeypatch.setenv("HELPDESK_SELF_ASSIGN_MAX_WORKLOAD", "3")
    monkeypatch.setenv("HELPDESK_NOTIFIER_BACKEND", "logging")

    settings = Settings(_env_file=None)

    assert settings.ticket_number_prefix == "FIX"
    assert settings.self_assign_max_workload == 3
    assert settings.notifier_backend == "logging"


def test_settings_reject_unknown_notifier_backend(monkeypatch):
    monkeypatch.setenv("HELPDESK_NOTIFIER_BACKEND", "carrier-pigeon")

    with pytest.raises(ValueError):
        Settings(_env_file=None)


@pytest.mark.parametrize(
    ("dsn", "expected"),
    [
        ("postgresql://u:p@db:5432/helpdesk", "postgresql+asyncpg://u:p@db:5432/helpdesk"),
        ("postgresql+asyncpg://u:p@db/helpdesk", "postgresql+asyncpg://u:p@db/helpdesk"),
        ("sqlite+aiosqlite:///helpdesk.db", "sqlite+aiosqlite:///helpdesk.db"),
    ],
)
def test_to_asyncpg_dsn(dsn, expected):
    assert _to_asyncpg_dsn(dsn) == expected


@pytest.mark.parametrize(
    ("backend", "notifier_type"),
    [("logging", LoggingNotifier), ("database", DatabaseNotifier)],
)
def test_build_workflow_service_selects_notifier(engine, backend, notifier_type):
    settings = Settings(_env_file=None, notifier_backend=backend, ticket_number_prefix="FIX")

    service = build_workflow_service(settings, async_sessionmaker(engine), engine=engine)

    assert isinstance(service._notifier, notifier_type)
    assert service._ticket_number_prefix == "FIX"


def test_parse_headers_skips_malformed_items():
    assert parse_headers("authorization=Bearer abc, x-tenant = plant ,broken,=novalue") == {
        "authorization": "Bearer abc",
        "x-tenant": "plant",
    }
    assert parse_headers(None) == {}


def test_configure_logging_sets_package_level():
    settings = Settings(_env_file=None, log_level="debug")

    logger = configure_logging(settings)

    assert logger.level == logging.DEBUG
    assert logging.getLogger("helpdesk").level == logging.DEBUG
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


def test_init_tracer_disabled_returns_none():
    provider = init_tracer(Settings(_env_file=None, otel_enabled=False))

    assert provider is None
    shutdown_tracer(provider)


def test_configure_logging_installs_context_formatter():
    configure_logging(Settings(_env_file=None))

    formatters = [handler.formatter for handler in logging.getLogger().handlers]

    assert any(isinstance(formatter, ContextFormatter) for formatter in formatters)


def test_context_formatter_appends_present_fields():
    formatter = ContextFormatter("%(levelname)s %(message)s")
    logger = logging.getLogger("helpdesk.test")
    record = logger.makeRecord(
        logger.name,
        logging.WARNING,
        __file__,
        1,
        "Ticket number %s already taken",
        ("HIT2610180001",),
        None,
        extra={"factory_id": "factory-1", "actor_id": None, "operation": "create_ticket"},
    )

    assert formatter.format(record) == (
        "WARNING Ticket number HIT2610180001 already taken [operation=create_ticket factory_id=factory-1]"
    )


def test_context_formatter_leaves_plain_records_alone():
    formatter = ContextFormatter("%(message)s")
    record = logging.makeLogRecord({"msg": "Started", "args": ()})

    assert formatter.format(record) == "Started"


@pytest.mark.asyncio
async def test_storage_failure_log_names_ticket_and_actor(service, repository, open_ticket, monkeypatch):
    ticket = await open_ticket()

    async def broken_write(*args, **kwargs):
        raise OperationalError("UPDATE tickets", {}, Exception("disk I/O error"))

    monkeypatch.setattr(repository, "compare_and_set", broken_write)
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(ContextFormatter("%(levelname)s %(message)s"))
    service_logger = logging.getLogger("helpdesk.workflow.service")
    service_logger.addHandler(handler)
    try:
        with pytest.raises(StorageError):
            await service.assign(ticket.id, assigner_id=ADMIN_ID, assignee_id=STAFF_A)
    finally:
        service_logger.removeHandler(handler)

    first_line = stream.getvalue().splitlines()[0]
    assert first_line.startswith("ERROR Storage failure during assign")
    assert f"ticket_id={ticket.id}" in first_line
    assert f"actor_id={ADMIN_ID}" in first_line
    assert "operation=assign" in first_line
    assert "disk I/O error" in stream.getvalue()
