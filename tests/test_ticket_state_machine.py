import pytest

from helpdesk.workflow.errors import InvalidTicketTransitionError
from helpdesk.workflow.state import TicketPriority, TicketStateMachine, TicketStatus


def test_ticket_state_machine_allows_expected_transitions():
    assert TicketStateMachine.can_transition(TicketStatus.PENDING, TicketStatus.ADMIN_REVIEW)
    assert TicketStateMachine.can_transition(TicketStatus.ADMIN_REVIEW, TicketStatus.APPROVED)
    assert TicketStateMachine.can_transition(TicketStatus.ADMIN_REVIEW, TicketStatus.REJECTED)
    assert TicketStateMachine.can_transition(TicketStatus.APPROVED, TicketStatus.IN_PROGRESS)
    assert TicketStateMachine.can_transition(TicketStatus.IN_PROGRESS, TicketStatus.COMPLETED)
    assert TicketStateMachine.can_transition(TicketStatus.COMPLETED, TicketStatus.CLOSED)


def test_ticket_state_machine_blocks_invalid_transitions():
    assert not TicketStateMachine.can_transition(TicketStatus.PENDING, TicketStatus.APPROVED)
    assert not TicketStateMachine.can_transition(TicketStatus.IN_PROGRESS, TicketStatus.APPROVED)
    assert not TicketStateMachine.can_transition(TicketStatus.CLOSED, TicketStatus.PENDING)
    with pytest.raises(InvalidTicketTransitionError) as excinfo:
        TicketStateMachine.assert_transition(TicketStatus.CLOSED, TicketStatus.IN_PROGRESS)

    assert excinfo.value.kind == "invalid_transition"
    assert excinfo.value.current is TicketStatus.CLOSED
    assert excinfo.value.target is TicketStatus.IN_PROGRESS


@pytest.mark.parametrize("status", list(TicketStatus))
def test_same_state_is_never_a_transition(status):
    assert not TicketStateMachine.can_transition(status, status)


def test_terminal_states():
    terminal = {status for status in TicketStatus if TicketStateMachine.is_terminal(status)}

    assert terminal == {TicketStatus.REJECTED, TicketStatus.CLOSED}
    assert TicketStateMachine.initial_state() is TicketStatus.PENDING


def test_entry_timestamps_map_to_ticket_columns():
    assert TicketStateMachine.entry_timestamp(TicketStatus.APPROVED) == "approved_at"
    assert TicketStateMachine.entry_timestamp(TicketStatus.IN_PROGRESS) == "assigned_at"
    assert TicketStateMachine.entry_timestamp(TicketStatus.COMPLETED) == "resolved_at"
    assert TicketStateMachine.entry_timestamp(TicketStatus.CLOSED) == "closed_at"
    assert TicketStateMachine.entry_timestamp(TicketStatus.REJECTED) is None


def test_priority_rank_orders_by_urgency():
    ranked = sorted(TicketPriority, key=lambda priority: priority.rank, reverse=True)

    assert ranked == [TicketPriority.CRITICAL, TicketPriority.HIGH, TicketPriority.MEDIUM, TicketPriority.LOW]
