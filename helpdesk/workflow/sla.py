"""SLA deadline computation and breach detection."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Mapping

from .models import Ticket
from .state import FINISHED_STATUSES, TicketPriority

SLA_OFFSETS: Mapping[TicketPriority, timedelta] = {
    TicketPriority.CRITICAL: timedelta(hours=2),
    TicketPriority.HIGH: timedelta(hours=8),
    TicketPriority.MEDIUM: timedelta(hours=24),
    TicketPriority.LOW: timedelta(hours=72),
}

DEFAULT_SLA_OFFSET = SLA_OFFSETS[TicketPriority.MEDIUM]


def sla_offset(priority: TicketPriority | str) -> timedelta:
    """Return the resolution window for ``priority``; unknown values get the medium window."""

    try:
        return SLA_OFFSETS[TicketPriority(priority)]
    except ValueError:
        return DEFAULT_SLA_OFFSET


def compute_deadline(priority: TicketPriority | str, created_at: datetime) -> datetime:
    return created_at + sla_offset(priority)


def is_overdue(ticket: Ticket, now: datetime) -> bool:
    """A ticket is overdue once ``now`` passes its deadline, unless it is already finished."""

    if ticket.sla_deadline is None or ticket.status in FINISHED_STATUSES:
        return False
    return now > ticket.sla_deadline


def time_remaining(ticket: Ticket, now: datetime) -> timedelta | None:
    """Signed time left before the deadline, or ``None`` when the SLA no longer applies."""

    if ticket.sla_deadline is None or ticket.status in FINISHED_STATUSES:
        return None
    return ticket.sla_deadline - now
