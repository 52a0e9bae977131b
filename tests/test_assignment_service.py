from __future__ import annotations

import asyncio

import pytest

from conftest import (
    ADMIN_ID,
    FACTORY_ID,
    INACTIVE_STAFF,
    MANAGER_ID,
    OTHER_FACTORY_ID,
    REQUESTER_ID,
    STAFF_A,
    STAFF_B,
    STAFF_OTHER_FACTORY,
    T0,
)
from helpdesk.db.models import FactoryTable
from helpdesk.workflow import (
    AuditAction,
    CapacityExceededError,
    ConcurrencyConflictError,
    InvalidTicketStateError,
    ResourceNotFoundError,
    TicketStatus,
    TicketValidationError,
)


@pytest.mark.asyncio
async def test_assign_then_reassign_keeps_one_active_record(service, open_ticket, notifier):
    ticket = await open_ticket(status=TicketStatus.APPROVED)

    assigned = await service.assign(ticket.id, assigner_id=ADMIN_ID, assignee_id=STAFF_A, reason="Closest tech")

    assert assigned.status is TicketStatus.IN_PROGRESS
    assert assigned.assigned_to == STAFF_A
    [record] = await service.get_assignment_history(ticket.id)
    assert record.is_active and record.assigned_to == STAFF_A

    reassigned = await service.reassign(ticket.id, actor_id=ADMIN_ID, new_assignee_id=STAFF_B, reason="Shift change")

    assert reassigned.status is TicketStatus.IN_PROGRESS
    assert reassigned.assigned_to == STAFF_B
    history = await service.get_assignment_history(ticket.id)
    active = [item for item in history if item.is_active]
    inactive = [item for item in history if not item.is_active]
    assert [item.assigned_to for item in active] == [STAFF_B]
    assert [item.assigned_to for item in inactive] == [STAFF_A]
    assert inactive[0].completed_at is None

    assert notifier.types_for(STAFF_A) == ["ticket_assigned", "ticket_reassigned"]
    assert notifier.types_for(STAFF_B) == ["ticket_assigned"]

    entries = [entry for entry in await service.get_audit_trail(ticket.id) if entry.action is AuditAction.ASSIGNED]
    assert [(entry.old_value, entry.new_value) for entry in entries] == [(None, STAFF_A), (STAFF_A, STAFF_B)]


@pytest.mark.asyncio
async def test_assign_requires_approved_ticket(service, open_ticket):
    ticket = await open_ticket(status=TicketStatus.ADMIN_REVIEW)

    with pytest.raises(InvalidTicketStateError):
        await service.assign(ticket.id, assigner_id=ADMIN_ID, assignee_id=STAFF_A)

    assert await service.get_assignment_history(ticket.id) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("assignee", "error"),
    [
        ("ghost", ResourceNotFoundError),
        (INACTIVE_STAFF, TicketValidationError),
        (REQUESTER_ID, TicketValidationError),
        (ADMIN_ID, TicketValidationError),
    ],
)
async def test_assign_rejects_ineligible_assignees(service, open_ticket, assignee, error):
    ticket = await open_ticket(status=TicketStatus.APPROVED)

    with pytest.raises(error):
        await service.assign(ticket.id, assigner_id=ADMIN_ID, assignee_id=assignee)


@pytest.mark.asyncio
async def test_unassign_returns_ticket_to_pool(service, open_ticket, notifier):
    ticket = await open_ticket(status=TicketStatus.IN_PROGRESS)

    released = await service.unassign(ticket.id, actor_id=ADMIN_ID, reason="Wrong skill set")

    assert released.status is TicketStatus.APPROVED
    assert released.assigned_to is None
    assert released.assigned_at == ticket.assigned_at
    history = await service.get_assignment_history(ticket.id)
    assert not any(item.is_active for item in history)
    assert notifier.types_for(STAFF_A)[-1] == "ticket_unassigned"

    entry = (await service.get_audit_trail(ticket.id))[-1]
    assert entry.action is AuditAction.ASSIGNED
    assert (entry.old_value, entry.new_value) == (STAFF_A, None)
    assert entry.metadata["previous_assignment_id"] == history[0].id

    with pytest.raises(InvalidTicketStateError):
        await service.unassign(ticket.id, actor_id=ADMIN_ID)


@pytest.mark.asyncio
async def test_assigned_at_is_only_stamped_once(service, open_ticket):
    ticket = await open_ticket(status=TicketStatus.IN_PROGRESS)
    first_stamp = ticket.assigned_at

    await service.unassign(ticket.id, actor_id=ADMIN_ID)
    again = await service.assign(ticket.id, assigner_id=ADMIN_ID, assignee_id=STAFF_B)

    assert again.assigned_at == first_stamp
    assert len(await service.get_assignment_history(ticket.id)) == 2


@pytest.mark.asyncio
async def test_reassign_preconditions(service, open_ticket):
    approved = await open_ticket(status=TicketStatus.APPROVED)
    with pytest.raises(InvalidTicketStateError):
        await service.reassign(approved.id, actor_id=ADMIN_ID, new_assignee_id=STAFF_B)

    in_progress = await open_ticket(status=TicketStatus.IN_PROGRESS)
    with pytest.raises(TicketValidationError):
        await service.reassign(in_progress.id, actor_id=ADMIN_ID, new_assignee_id=STAFF_A)

    closed = await open_ticket(status=TicketStatus.CLOSED)
    with pytest.raises(InvalidTicketStateError):
        await service.reassign(closed.id, actor_id=ADMIN_ID, new_assignee_id=STAFF_B)


@pytest.mark.asyncio
async def test_completed_ticket_can_be_handed_over(service, open_ticket, notifier):
    ticket = await open_ticket(status=TicketStatus.COMPLETED)
    [finished] = await service.get_assignment_history(ticket.id)
    assert finished.is_active and finished.completed_at is not None

    handed_over = await service.reassign(ticket.id, actor_id=ADMIN_ID, new_assignee_id=STAFF_B, reason="Follow-up")

    assert handed_over.status is TicketStatus.COMPLETED
    assert handed_over.assigned_to == STAFF_B
    history = await service.get_assignment_history(ticket.id)
    active = [item for item in history if item.is_active]
    assert [item.assigned_to for item in active] == [STAFF_B]
    assert active[0].completed_at == finished.completed_at
    assert notifier.types_for(STAFF_B) == ["ticket_assigned"]

    entry = (await service.get_audit_trail(ticket.id))[-1]
    assert (entry.old_value, entry.new_value) == (STAFF_A, STAFF_B)
    assert entry.metadata["previous_assignment_id"] == finished.id
    assert entry.metadata["status"] == "completed"

    closed = await service.transition_status(ticket.id, actor_id=ADMIN_ID, new_status=TicketStatus.CLOSED)
    assert closed.assigned_to == STAFF_B


@pytest.mark.asyncio
async def test_self_assign_notifies_requester(service, open_ticket, notifier):
    ticket = await open_ticket(status=TicketStatus.APPROVED)

    claimed = await service.self_assign(ticket.id, user_id=STAFF_B, notes="On my way")

    assert claimed.assigned_to == STAFF_B
    [record] = await service.get_assignment_history(ticket.id)
    assert record.assigned_by == STAFF_B
    assert record.reason == "On my way"
    assert notifier.sent[-1]["user_id"] == REQUESTER_ID
    assert "Sam Beta" in notifier.sent[-1]["message"]


@pytest.mark.asyncio
async def test_self_assign_is_scoped_to_factory(service, open_ticket):
    ticket = await open_ticket(status=TicketStatus.APPROVED)

    with pytest.raises(TicketValidationError):
        await service.self_assign(ticket.id, user_id=STAFF_OTHER_FACTORY)


@pytest.mark.asyncio
async def test_self_assign_enforces_workload_cap(service, open_ticket):
    tickets = [await open_ticket(status=TicketStatus.APPROVED) for _ in range(3)]

    await service.self_assign(tickets[0].id, user_id=STAFF_B)
    await service.self_assign(tickets[1].id, user_id=STAFF_B)

    with pytest.raises(CapacityExceededError) as excinfo:
        await service.self_assign(tickets[2].id, user_id=STAFF_B)

    assert excinfo.value.workload == 2
    assert excinfo.value.limit == 2
    untouched = await service.get_ticket(tickets[2].id)
    assert untouched.status is TicketStatus.APPROVED
    assert untouched.assigned_to is None


@pytest.mark.asyncio
async def test_self_assign_rejects_already_assigned_ticket(service, open_ticket):
    ticket = await open_ticket(status=TicketStatus.IN_PROGRESS)

    with pytest.raises(InvalidTicketStateError):
        await service.self_assign(ticket.id, user_id=STAFF_B)


@pytest.mark.asyncio
async def test_concurrent_assignments_admit_exactly_one_winner(service, open_ticket):
    ticket = await open_ticket(status=TicketStatus.APPROVED)

    results = await asyncio.gather(
        service.assign(ticket.id, assigner_id=ADMIN_ID, assignee_id=STAFF_A),
        service.assign(ticket.id, assigner_id=ADMIN_ID, assignee_id=STAFF_B),
        return_exceptions=True,
    )

    winners = [result for result in results if not isinstance(result, BaseException)]
    losers = [result for result in results if isinstance(result, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], (InvalidTicketStateError, ConcurrencyConflictError))

    history = await service.get_assignment_history(ticket.id)
    active = [item for item in history if item.is_active]
    assert len(active) == 1
    assert active[0].assigned_to == winners[0].assigned_to
    stored = await service.get_ticket(ticket.id)
    assert stored.assigned_to == winners[0].assigned_to


@pytest.mark.asyncio
async def test_auto_assign_balances_by_priority_and_load(service, open_ticket, notifier):
    await open_ticket(status=TicketStatus.IN_PROGRESS)  # STAFF_A already carries one ticket
    low = await open_ticket(status=TicketStatus.APPROVED, priority="low")
    critical = await open_ticket(status=TicketStatus.APPROVED, priority="critical")
    high = await open_ticket(status=TicketStatus.APPROVED, priority="high")

    result = await service.auto_assign(FACTORY_ID, actor_id=ADMIN_ID, max_assignments=5)

    assert result.failed == []
    assert [item.ticket_id for item in result.assigned] == [critical.id, high.id, low.id]
    assert [item.assigned_to for item in result.assigned] == [MANAGER_ID, STAFF_B, MANAGER_ID]
    assert "ticket_assigned" in notifier.types_for(MANAGER_ID)

    workload = {row.user_id: row.total for row in await service.team_workload(factory_id=FACTORY_ID)}
    assert workload == {MANAGER_ID: 2, STAFF_A: 1, STAFF_B: 1}


@pytest.mark.asyncio
async def test_auto_assign_respects_batch_limit(service, open_ticket):
    for _ in range(3):
        await open_ticket(status=TicketStatus.APPROVED)

    result = await service.auto_assign(FACTORY_ID, actor_id=ADMIN_ID, max_assignments=2)

    assert len(result.assigned) == 2
    remaining = await service.list_tickets(status="approved", factory_id=FACTORY_ID)
    assert len(remaining) == 1


@pytest.mark.asyncio
async def test_auto_assign_records_failures_and_continues(service, open_ticket, repository, monkeypatch):
    claimed = await open_ticket(status=TicketStatus.APPROVED)
    free = await open_ticket(status=TicketStatus.APPROVED)
    stale_snapshot = await service.get_ticket(claimed.id)
    await service.self_assign(claimed.id, user_id=STAFF_B)

    original = repository.list_unassigned_approved

    async def stale_listing(session, *, factory_id, limit):
        fresh = await original(session, factory_id=factory_id, limit=limit)
        return [stale_snapshot, *fresh]

    monkeypatch.setattr(repository, "list_unassigned_approved", stale_listing)

    result = await service.auto_assign(FACTORY_ID, actor_id=ADMIN_ID)

    assert [item.ticket_id for item in result.failed] == [claimed.id]
    assert result.failed[0].error_kind == "invalid_state"
    assert [item.ticket_id for item in result.assigned] == [free.id]
    stored = await service.get_ticket(claimed.id)
    assert stored.assigned_to == STAFF_B


@pytest.mark.asyncio
async def test_auto_assign_with_nothing_to_do(service):
    result = await service.auto_assign(OTHER_FACTORY_ID, actor_id=ADMIN_ID)

    assert result.assigned == []
    assert result.failed == []


@pytest.mark.asyncio
async def test_auto_assign_without_staff_is_rejected(service, open_ticket, session_factory):
    async with session_factory() as session:
        async with session.begin():
            session.add(FactoryTable(id="factory-empty", name="Warehouse", created_at=T0))
    await open_ticket(status=TicketStatus.APPROVED, factory_id="factory-empty")

    with pytest.raises(TicketValidationError):
        await service.auto_assign("factory-empty", actor_id=ADMIN_ID)


@pytest.mark.asyncio
@pytest.mark.parametrize(("factory_id", "limit"), [("", 5), ("unknown", 5), (FACTORY_ID, 0)])
async def test_auto_assign_validates_arguments(service, factory_id, limit):
    with pytest.raises(TicketValidationError):
        await service.auto_assign(factory_id, actor_id=ADMIN_ID, max_assignments=limit)


@pytest.mark.asyncio
async def test_team_workload_orders_least_busy_first(service, open_ticket):
    await open_ticket(status=TicketStatus.IN_PROGRESS, priority="critical")
    second = await open_ticket(status=TicketStatus.APPROVED, priority="high")
    await service.assign(second.id, assigner_id=ADMIN_ID, assignee_id=STAFF_A)

    rows = await service.team_workload(factory_id=FACTORY_ID)

    assert [row.user_id for row in rows] == [MANAGER_ID, STAFF_B, STAFF_A]
    busiest = rows[-1]
    assert (busiest.total, busiest.high_priority, busiest.in_progress) == (2, 2, 2)
    assert busiest.overdue == 0
