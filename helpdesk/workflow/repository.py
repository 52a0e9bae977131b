from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Sequence

from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from helpdesk.db.models import TicketCommentTable, TicketTable

from .clock import ensure_datetime
from .models import Comment, Ticket
from .state import FINISHED_STATUSES, TicketPriority, TicketStatus

_PRIORITY_ORDER = case(
    {priority.value: priority.rank for priority in TicketPriority},
    value=TicketTable.priority,
    else_=TicketPriority.MEDIUM.rank,
)


class TicketRepository:
    """Persistence helper for the `tickets` table and ticket comments.

    Methods taking a ``session`` participate in the caller's transaction; the
    service decides where a unit of work begins and ends.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Open a session whose work commits on success and rolls back on error."""

        async with self._session_factory() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            yield session

    async def get(self, session: AsyncSession, ticket_id: str) -> Ticket | None:
        result = await session.execute(
            select(TicketTable)
            .where(TicketTable.id == ticket_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        if row is None:
            return None
        return self._table_to_ticket(row)

    async def next_ticket_number(self, session: AsyncSession, *, prefix: str, day: datetime) -> str:
        """Return the next free ``<prefix><YYMMDD><NNNN>`` number for ``day``."""

        date_prefix = f"{prefix}{day:%y%m%d}"
        result = await session.execute(
            select(TicketTable.ticket_number)
            .where(TicketTable.ticket_number.like(f"{date_prefix}%"))
            .order_by(func.length(TicketTable.ticket_number).desc(), TicketTable.ticket_number.desc())
            .limit(1)
        )
        last = result.scalars().first()
        sequence = 1
        if last is not None:
            suffix = last[len(date_prefix) :]
            sequence = int(suffix) + 1 if suffix.isdigit() else 1
        return f"{date_prefix}{sequence:04d}"

    async def insert(self, session: AsyncSession, ticket: Ticket) -> None:
        session.add(
            TicketTable(
                id=ticket.id,
                ticket_number=ticket.ticket_number,
                title=ticket.title,
                description=ticket.description,
                priority=ticket.priority.value,
                status=ticket.status.value,
                category=ticket.category,
                urgency_level=ticket.urgency_level,
                business_impact=ticket.business_impact,
                factory_id=ticket.factory_id,
                requester_id=ticket.requester_id,
                assigned_to=ticket.assigned_to,
                version=ticket.version,
                sla_deadline=ticket.sla_deadline,
                created_at=ticket.created_at,
                updated_at=ticket.updated_at,
            )
        )
        await session.flush()

    async def compare_and_set(self, session: AsyncSession, ticket: Ticket, **values: Any) -> bool:
        """Write ``values`` only if the stored row still carries ``ticket.version``.

        Returns ``False`` when another transaction updated the ticket first.
        """

        columns = {key: value.value if isinstance(value, Enum) else value for key, value in values.items()}
        columns["version"] = ticket.version + 1
        result = await session.execute(
            update(TicketTable)
            .where(TicketTable.id == ticket.id, TicketTable.version == ticket.version)
            .values(**columns)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_tickets(
        self,
        session: AsyncSession,
        *,
        status: TicketStatus | None = None,
        priority: TicketPriority | None = None,
        factory_id: str | None = None,
        assigned_to: str | None = None,
    ) -> list[Ticket]:
        statement = select(TicketTable)
        if status is not None:
            statement = statement.where(TicketTable.status == status.value)
        if priority is not None:
            statement = statement.where(TicketTable.priority == priority.value)
        if factory_id is not None:
            statement = statement.where(TicketTable.factory_id == factory_id)
        if assigned_to is not None:
            statement = statement.where(TicketTable.assigned_to == assigned_to)
        result = await session.execute(statement.order_by(TicketTable.created_at.desc()))
        return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def list_open(self, session: AsyncSession, *, factory_id: str | None = None) -> list[Ticket]:
        """Tickets the SLA still applies to, oldest deadline first."""

        statement = select(TicketTable).where(
            TicketTable.status.not_in([status.value for status in FINISHED_STATUSES])
        )
        if factory_id is not None:
            statement = statement.where(TicketTable.factory_id == factory_id)
        result = await session.execute(statement.order_by(TicketTable.sla_deadline.asc()))
        return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def list_unassigned_approved(
        self, session: AsyncSession, *, factory_id: str, limit: int
    ) -> list[Ticket]:
        """Approved, unassigned tickets of a factory: highest priority first, then oldest first."""

        result = await session.execute(
            select(TicketTable)
            .where(
                TicketTable.factory_id == factory_id,
                TicketTable.status == TicketStatus.APPROVED.value,
                TicketTable.assigned_to.is_(None),
            )
            .order_by(_PRIORITY_ORDER.desc(), TicketTable.created_at.asc())
            .limit(limit)
        )
        return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def list_assigned_to(
        self, session: AsyncSession, user_ids: Iterable[str], statuses: Iterable[TicketStatus]
    ) -> list[Ticket]:
        ids = list(user_ids)
        if not ids:
            return []
        result = await session.execute(
            select(TicketTable).where(
                TicketTable.assigned_to.in_(ids),
                TicketTable.status.in_([status.value for status in statuses]),
            )
        )
        return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def insert_comment(self, session: AsyncSession, comment: Comment) -> None:
        session.add(
            TicketCommentTable(
                id=comment.id,
                ticket_id=comment.ticket_id,
                author_id=comment.author_id,
                content=comment.content,
                is_internal=comment.is_internal,
                created_at=comment.created_at,
            )
        )
        await session.flush()

    async def list_comments(self, session: AsyncSession, ticket_id: str) -> Sequence[Comment]:
        result = await session.execute(
            select(TicketCommentTable)
            .where(TicketCommentTable.ticket_id == ticket_id)
            .order_by(TicketCommentTable.created_at.asc())
        )
        return [
            Comment(
                id=row.id,
                ticket_id=row.ticket_id,
                author_id=row.author_id,
                content=row.content,
                is_internal=row.is_internal,
                created_at=ensure_datetime(row.created_at),
            )
            for row in result.scalars().all()
        ]

    @staticmethod
    def is_ticket_number_conflict(exc: IntegrityError) -> bool:
        return "ticket_number" in str(exc.orig)

    @staticmethod
    def _table_to_ticket(row: TicketTable) -> Ticket:
        return Ticket(
            id=row.id,
            ticket_number=row.ticket_number,
            title=row.title,
            description=row.description,
            priority=TicketPriority(row.priority),
            status=TicketStatus(row.status),
            factory_id=row.factory_id,
            requester_id=row.requester_id,
            urgency_level=row.urgency_level,
            version=row.version,
            category=row.category,
            business_impact=row.business_impact,
            assigned_to=row.assigned_to,
            sla_deadline=ensure_datetime(row.sla_deadline),
            approved_at=ensure_datetime(row.approved_at),
            assigned_at=ensure_datetime(row.assigned_at),
            resolved_at=ensure_datetime(row.resolved_at),
            closed_at=ensure_datetime(row.closed_at),
            created_at=ensure_datetime(row.created_at),
            updated_at=ensure_datetime(row.updated_at),
        )
