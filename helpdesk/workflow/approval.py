from __future__ import annotations

from datetime import datetime

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from helpdesk.db.models import TicketApprovalTable, TicketTable

from .clock import ensure_datetime
from .errors import InvalidTicketStateError, TicketValidationError
from .models import ApprovalDecision, ApprovalRecord, DecidedApproval
from .state import TicketPriority, TicketStatus


class ApprovalLedger:
    """Keeps the single approval record each reviewed ticket owns."""

    async def get(self, session: AsyncSession, ticket_id: str) -> ApprovalRecord | None:
        row = await self._get_row(session, ticket_id)
        return None if row is None else self._to_record(row)

    async def open_for_review(self, session: AsyncSession, ticket_id: str, *, now: datetime) -> ApprovalRecord:
        """Create the pending record when a ticket enters admin review."""

        row = await self._get_row(session, ticket_id)
        if row is None:
            row = TicketApprovalTable(
                ticket_id=ticket_id,
                decision=ApprovalDecision.PENDING.value,
                created_at=now,
            )
            session.add(row)
            await session.flush()
        elif row.decision != ApprovalDecision.PENDING.value:
            raise InvalidTicketStateError(f"Ticket {ticket_id} has already been decided")
        return self._to_record(row)

    async def decide(
        self,
        session: AsyncSession,
        ticket_id: str,
        *,
        admin_id: str,
        decision: ApprovalDecision,
        reason: str | None,
        now: datetime,
    ) -> ApprovalRecord:
        if decision is ApprovalDecision.PENDING:
            raise TicketValidationError("Decision must be 'approved' or 'rejected'")

        row = await self._get_row(session, ticket_id)
        if row is None:
            row = TicketApprovalTable(ticket_id=ticket_id, created_at=now)
            session.add(row)
        elif row.decision != ApprovalDecision.PENDING.value:
            raise InvalidTicketStateError(f"Ticket {ticket_id} has already been decided")

        row.admin_id = admin_id
        row.decision = decision.value
        row.reason = reason
        row.decided_at = now
        await session.flush()
        return self._to_record(row)

    async def history(
        self,
        session: AsyncSession,
        *,
        admin_id: str | None = None,
        decision: ApprovalDecision | None = None,
        decided_from: datetime | None = None,
        decided_to: datetime | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[DecidedApproval], int]:
        """Decided approvals matching the filters, latest decision first, plus the total match count."""

        conditions = [TicketApprovalTable.decision != ApprovalDecision.PENDING.value]
        if admin_id is not None:
            conditions.append(TicketApprovalTable.admin_id == admin_id)
        if decision is not None:
            conditions.append(TicketApprovalTable.decision == decision.value)
        if decided_from is not None:
            conditions.append(TicketApprovalTable.decided_at >= decided_from)
        if decided_to is not None:
            conditions.append(TicketApprovalTable.decided_at <= decided_to)

        total = await session.scalar(select(func.count()).select_from(TicketApprovalTable).where(*conditions))
        result = await session.execute(
            select(TicketApprovalTable, TicketTable)
            .join(TicketTable, TicketTable.id == TicketApprovalTable.ticket_id)
            .where(*conditions)
            .order_by(TicketApprovalTable.decided_at.desc(), TicketApprovalTable.id)
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        items = [
            DecidedApproval(
                approval=self._to_record(approval),
                ticket_number=ticket.ticket_number,
                ticket_title=ticket.title,
                ticket_status=TicketStatus(ticket.status),
                ticket_priority=TicketPriority(ticket.priority),
            )
            for approval, ticket in result.all()
        ]
        return items, int(total or 0)

    @staticmethod
    async def _get_row(session: AsyncSession, ticket_id: str) -> TicketApprovalTable | None:
        result = await session.execute(
            select(TicketApprovalTable)
            .where(TicketApprovalTable.ticket_id == ticket_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    def _to_record(row: TicketApprovalTable) -> ApprovalRecord:
        return ApprovalRecord(
            id=row.id,
            ticket_id=row.ticket_id,
            decision=ApprovalDecision(row.decision),
            created_at=ensure_datetime(row.created_at),
            admin_id=row.admin_id,
            reason=row.reason,
            decided_at=ensure_datetime(row.decided_at),
        )
