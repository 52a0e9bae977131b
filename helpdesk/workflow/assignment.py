from __future__ import annotations

import heapq
from datetime import datetime
from typing import Iterable

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from helpdesk.db.models import TicketAssignmentTable, TicketTable

from .clock import ensure_datetime
from .models import AssignmentRecord
from .state import WORKLOAD_STATUSES


class AssignmentLedger:
    """History of who owns which ticket; at most one record per ticket is active."""

    async def active_for(self, session: AsyncSession, ticket_id: str) -> AssignmentRecord | None:
        result = await session.execute(
            select(TicketAssignmentTable)
            .where(TicketAssignmentTable.ticket_id == ticket_id, TicketAssignmentTable.is_active.is_(True))
            .execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        return None if row is None else self._to_record(row)

    async def activate(
        self,
        session: AsyncSession,
        *,
        ticket_id: str,
        assignee_id: str,
        assigner_id: str,
        reason: str | None,
        now: datetime,
        completed_at: datetime | None = None,
    ) -> AssignmentRecord:
        """Deactivate the current record, if any, and append a new active one."""

        await self.deactivate(session, ticket_id)
        row = TicketAssignmentTable(
            ticket_id=ticket_id,
            assigned_to=assignee_id,
            assigned_by=assigner_id,
            reason=reason,
            is_active=True,
            created_at=now,
            completed_at=completed_at,
        )
        session.add(row)
        await session.flush()
        return self._to_record(row)

    async def deactivate(self, session: AsyncSession, ticket_id: str) -> int:
        result = await session.execute(
            update(TicketAssignmentTable)
            .where(TicketAssignmentTable.ticket_id == ticket_id, TicketAssignmentTable.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def mark_completed(self, session: AsyncSession, ticket_id: str, *, now: datetime) -> None:
        # Record stays active; only completed_at changes.
        await session.execute(
            update(TicketAssignmentTable)
            .where(TicketAssignmentTable.ticket_id == ticket_id, TicketAssignmentTable.is_active.is_(True))
            .values(completed_at=now)
            .execution_options(synchronize_session=False)
        )

    async def history(self, session: AsyncSession, ticket_id: str) -> list[AssignmentRecord]:
        result = await session.execute(
            select(TicketAssignmentTable)
            .where(TicketAssignmentTable.ticket_id == ticket_id)
            .order_by(TicketAssignmentTable.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return [self._to_record(row) for row in result.scalars().all()]

    async def workloads(self, session: AsyncSession, user_ids: Iterable[str]) -> dict[str, int]:
        """Count active assignments on approved or in-progress tickets per user."""

        ids = list(user_ids)
        if not ids:
            return {}
        result = await session.execute(
            select(TicketAssignmentTable.assigned_to, func.count())
            .join(TicketTable, TicketTable.id == TicketAssignmentTable.ticket_id)
            .where(
                TicketAssignmentTable.assigned_to.in_(ids),
                TicketAssignmentTable.is_active.is_(True),
                TicketTable.status.in_([status.value for status in WORKLOAD_STATUSES]),
            )
            .group_by(TicketAssignmentTable.assigned_to)
        )
        loads = {user_id: 0 for user_id in ids}
        for user_id, count in result.all():
            loads[user_id] = int(count)
        return loads

    @staticmethod
    def _to_record(row: TicketAssignmentTable) -> AssignmentRecord:
        return AssignmentRecord(
            id=row.id,
            ticket_id=row.ticket_id,
            assigned_to=row.assigned_to,
            assigned_by=row.assigned_by,
            is_active=row.is_active,
            created_at=ensure_datetime(row.created_at),
            reason=row.reason,
            completed_at=ensure_datetime(row.completed_at),
        )


class WorkloadBalancer:
    """Least-loaded-first allocator used by a single auto-assign batch.

    Ties are broken by the order in which staff were supplied, which spreads
    a batch round-robin across equally loaded members.
    """

    def __init__(self, loads: Iterable[tuple[str, int]]) -> None:
        self._heap: list[tuple[int, int, str]] = [
            (load, order, staff_id) for order, (staff_id, load) in enumerate(loads)
        ]
        heapq.heapify(self._heap)

    def __len__(self) -> int:
        return len(self._heap)

    def candidate(self) -> str:
        if not self._heap:
            raise LookupError("No staff available")
        return self._heap[0][2]

    def record_assignment(self, staff_id: str) -> None:
        """Bump the load of ``staff_id`` after a successful allocation."""

        for index, (load, order, member) in enumerate(self._heap):
            if member == staff_id:
                self._heap[index] = (load + 1, order, member)
                heapq.heapify(self._heap)
                return
        raise KeyError(staff_id)

    def loads(self) -> dict[str, int]:
        return {member: load for load, _, member in sorted(self._heap, key=lambda item: item[1])}
