from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from helpdesk.db.models import TicketAuditLogTable

from .clock import ensure_datetime
from .models import AuditAction, AuditEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only recorder of ticket history.

    Entries are written inside a SAVEPOINT of the caller's transaction. A
    failed insert is logged and rolled back on its own, so the mutation it
    describes still commits.
    """

    async def record(
        self,
        session: AsyncSession,
        *,
        ticket_id: str,
        actor_id: str,
        action: AuditAction,
        created_at: datetime,
        field_name: str | None = None,
        old_value: str | None = None,
        new_value: str | None = None,
        comment: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEntry | None:
        entry = AuditEntry(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            actor_id=actor_id,
            action=action,
            created_at=created_at,
            field_name=field_name,
            old_value=old_value,
            new_value=new_value,
            comment=comment,
            metadata=dict(metadata or {}),
        )
        try:
            async with session.begin_nested():
                session.add(self._to_row(entry))
        except SQLAlchemyError:
            logger.exception(
                "Failed to record audit entry",
                extra={"ticket_id": ticket_id, "action": action.value, "actor_id": actor_id},
            )
            return None
        return entry

    async def history(self, session: AsyncSession, ticket_id: str) -> list[AuditEntry]:
        result = await session.execute(
            select(TicketAuditLogTable)
            .where(TicketAuditLogTable.ticket_id == ticket_id)
            .order_by(TicketAuditLogTable.created_at.asc(), TicketAuditLogTable.seq.asc())
        )
        return [self._to_entry(row) for row in result.scalars().all()]

    @staticmethod
    def _to_row(entry: AuditEntry) -> TicketAuditLogTable:
        return TicketAuditLogTable(
            id=entry.id,
            ticket_id=entry.ticket_id,
            actor_id=entry.actor_id,
            action=entry.action.value,
            field_name=entry.field_name,
            old_value=entry.old_value,
            new_value=entry.new_value,
            comment=entry.comment,
            metadata_=dict(entry.metadata),
            created_at=entry.created_at,
        )

    @staticmethod
    def _to_entry(row: TicketAuditLogTable) -> AuditEntry:
        return AuditEntry(
            id=row.id,
            ticket_id=row.ticket_id,
            actor_id=row.actor_id,
            action=AuditAction(row.action),
            created_at=ensure_datetime(row.created_at),
            field_name=row.field_name,
            old_value=row.old_value,
            new_value=row.new_value,
            comment=row.comment,
            metadata=dict(row.metadata_ or {}),
        )
