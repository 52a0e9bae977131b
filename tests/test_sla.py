from datetime import datetime, timedelta, timezone

import pytest

from helpdesk.workflow.models import Ticket
from helpdesk.workflow.sla import compute_deadline, is_overdue, sla_offset, time_remaining
from helpdesk.workflow.state import TicketPriority, TicketStatus

CREATED = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)


def _ticket(status: TicketStatus, deadline: datetime | None) -> Ticket:
    return Ticket(
        id="t-1",
        ticket_number="HIT2610180001",
        title="Compressor leak",
        description="Air pressure drops",
        priority=TicketPriority.HIGH,
        status=status,
        factory_id="factory-1",
        requester_id="employee-1",
        urgency_level=3,
        created_at=CREATED,
        updated_at=CREATED,
        sla_deadline=deadline,
    )


@pytest.mark.parametrize(
    ("priority", "hours"),
    [("critical", 2), ("high", 8), ("medium", 24), ("low", 72)],
)
def test_compute_deadline_offsets(priority, hours):
    assert compute_deadline(priority, CREATED) == CREATED + timedelta(hours=hours)


def test_unknown_priority_falls_back_to_medium_window():
    assert sla_offset("urgent") == timedelta(hours=24)
    assert compute_deadline("urgent", CREATED) == CREATED + timedelta(hours=24)


def test_is_overdue_after_deadline_passes():
    ticket = _ticket(TicketStatus.IN_PROGRESS, CREATED + timedelta(hours=8))

    assert not is_overdue(ticket, CREATED + timedelta(hours=8))
    assert is_overdue(ticket, CREATED + timedelta(hours=8, seconds=1))


@pytest.mark.parametrize("status", [TicketStatus.COMPLETED, TicketStatus.CLOSED, TicketStatus.REJECTED])
def test_finished_tickets_are_never_overdue(status):
    ticket = _ticket(status, CREATED + timedelta(hours=2))

    assert not is_overdue(ticket, CREATED + timedelta(days=30))
    assert time_remaining(ticket, CREATED) is None


def test_time_remaining_is_signed():
    ticket = _ticket(TicketStatus.APPROVED, CREATED + timedelta(hours=2))

    assert time_remaining(ticket, CREATED + timedelta(hours=1)) == timedelta(hours=1)
    assert time_remaining(ticket, CREATED + timedelta(hours=3)) == timedelta(hours=-1)


def test_ticket_without_deadline_is_not_overdue():
    ticket = _ticket(TicketStatus.PENDING, None)

    assert not is_overdue(ticket, CREATED + timedelta(days=1))
    assert time_remaining(ticket, CREATED) is None
