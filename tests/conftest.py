from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from helpdesk.db.models import FactoryTable, UserTable
from helpdesk.workflow import (
    SqlFactoryDirectory,
    SqlUserDirectory,
    Ticket,
    TicketRepository,
    TicketStatus,
    TicketWorkflowService,
)

FACTORY_ID = "factory-1"
OTHER_FACTORY_ID = "factory-2"
INACTIVE_FACTORY_ID = "factory-closed"

ADMIN_ID = "admin-1"
REQUESTER_ID = "employee-1"
STAFF_A = "staff-a"
STAFF_B = "staff-b"
STAFF_OTHER_FACTORY = "staff-other"
MANAGER_ID = "manager-1"
INACTIVE_STAFF = "staff-inactive"

T0 = datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc)


class SteppingClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)) -> None:
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[dict[str, str | None]] = []

    async def notify(self, user_id, type, title, message, ticket_id=None) -> None:  # noqa: A002
        self.sent.append(
            {"user_id": user_id, "type": type, "title": title, "message": message, "ticket_id": ticket_id}
        )

    def types_for(self, user_id: str) -> list[str]:
        return [item["type"] for item in self.sent if item["user_id"] == user_id]


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncEngine:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'helpdesk.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        async with session.begin():
            session.add_all(
                [
                    FactoryTable(id=FACTORY_ID, name="Assembly", created_at=T0),
                    FactoryTable(id=OTHER_FACTORY_ID, name="Paint Shop", created_at=T0),
                    FactoryTable(id=INACTIVE_FACTORY_ID, name="Closed Plant", is_active=False, created_at=T0),
                ]
            )
            session.add_all(
                [
                    _user(ADMIN_ID, "admin", None, "Ada Admin"),
                    _user(REQUESTER_ID, "employee", FACTORY_ID, "Eve Employee"),
                    _user(STAFF_A, "support_staff", FACTORY_ID, "Sam Alpha"),
                    _user(STAFF_B, "support_staff", FACTORY_ID, "Sam Beta"),
                    _user(MANAGER_ID, "manager", FACTORY_ID, "Max Manager"),
                    _user(STAFF_OTHER_FACTORY, "support_staff", OTHER_FACTORY_ID, "Pat Painter"),
                    _user(INACTIVE_STAFF, "support_staff", FACTORY_ID, "Ivy Inactive", is_active=False),
                ]
            )
    return factory


def _user(user_id: str, role: str, factory_id: str | None, full_name: str, *, is_active: bool = True) -> UserTable:
    return UserTable(
        id=user_id,
        username=user_id,
        full_name=full_name,
        role=role,
        factory_id=factory_id,
        is_active=is_active,
        created_at=T0,
    )


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def repository(session_factory: async_sessionmaker, engine: AsyncEngine) -> TicketRepository:
    return TicketRepository(session_factory, engine=engine)


@pytest.fixture
def service(
    repository: TicketRepository,
    session_factory: async_sessionmaker,
    notifier: RecordingNotifier,
    clock: SteppingClock,
) -> TicketWorkflowService:
    return TicketWorkflowService(
        repository,
        users=SqlUserDirectory(session_factory),
        factories=SqlFactoryDirectory(session_factory),
        notifier=notifier,
        clock=clock,
        self_assign_max_workload=2,
    )


@pytest.fixture
def open_ticket(service: TicketWorkflowService) -> Callable[..., Awaitable[Ticket]]:
    """Create a ticket and drive it to ``status`` through the public operations."""

    async def factory(
        *,
        status: TicketStatus = TicketStatus.APPROVED,
        priority: str = "medium",
        factory_id: str = FACTORY_ID,
        title: str = "Conveyor belt stalls",
    ) -> Ticket:
        ticket = await service.create_ticket(
            title=title,
            description="Line 3 conveyor stops every few minutes",
            priority=priority,
            factory_id=factory_id,
            requester_id=REQUESTER_ID,
        )
        if status is TicketStatus.PENDING:
            return ticket
        ticket = await service.transition_status(ticket.id, actor_id=ADMIN_ID, new_status=TicketStatus.ADMIN_REVIEW)
        if status is TicketStatus.ADMIN_REVIEW:
            return ticket
        if status is TicketStatus.REJECTED:
            return await service.decide(ticket.id, admin_id=ADMIN_ID, decision="rejected")
        ticket = await service.decide(ticket.id, admin_id=ADMIN_ID, decision="approved")
        if status is TicketStatus.APPROVED:
            return ticket
        ticket = await service.assign(ticket.id, assigner_id=ADMIN_ID, assignee_id=STAFF_A)
        if status is TicketStatus.IN_PROGRESS:
            return ticket
        ticket = await service.transition_status(ticket.id, actor_id=STAFF_A, new_status=TicketStatus.COMPLETED)
        if status is TicketStatus.COMPLETED:
            return ticket
        return await service.transition_status(ticket.id, actor_id=ADMIN_ID, new_status=TicketStatus.CLOSED)

    return factory
