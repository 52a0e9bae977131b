from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, AsyncIterator, Callable, Iterable, Sequence, TypeVar

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .approval import ApprovalLedger
from .assignment import AssignmentLedger, WorkloadBalancer
from .audit import AuditLog
from .clock import Clock, ensure_datetime, utcnow
from .directory import FactoryDirectory, UserDirectory
from .errors import (
    CapacityExceededError,
    ConcurrencyConflictError,
    InvalidTicketStateError,
    ResourceNotFoundError,
    StorageError,
    TicketNotFoundError,
    TicketValidationError,
    WorkflowError,
)
from .models import (
    ASSIGNABLE_ROLES,
    STAFF_ROLES,
    ApprovalDecision,
    ApprovalHistory,
    ApprovalRecord,
    AssignmentFailure,
    AssignmentOutcome,
    AssignmentRecord,
    AuditAction,
    AuditEntry,
    AutoAssignResult,
    BulkDecisionResult,
    Comment,
    DecisionFailure,
    DirectoryUser,
    StaffWorkload,
    Ticket,
    UserRole,
)
from .notifications import LoggingNotifier, NotificationOutbox, Notifier
from .repository import TicketRepository
from .sla import compute_deadline, is_overdue
from .state import WORKLOAD_STATUSES, TicketPriority, TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_E = TypeVar("_E", bound=Enum)

_TITLE_MAX_LENGTH = 255
_CATEGORY_MAX_LENGTH = 100
_HISTORY_MAX_LIMIT = 100
_COMMENT_PREVIEW_LENGTH = 100
_HIGH_PRIORITIES = frozenset({TicketPriority.HIGH, TicketPriority.CRITICAL})


def _require_text(value: str | None, field: str, *, max_length: int | None = None) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise TicketValidationError(f"{field} is required")
    if max_length is not None and len(cleaned) > max_length:
        raise TicketValidationError(f"{field} must be at most {max_length} characters")
    return cleaned


def _parse_enum(enum_cls: type[_E], value: Any, field: str) -> _E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise TicketValidationError(f"Invalid {field} '{value}'; expected one of: {allowed}") from exc


def _validate_urgency(urgency_level: int) -> int:
    if isinstance(urgency_level, bool) or not isinstance(urgency_level, int) or not 1 <= urgency_level <= 5:
        raise TicketValidationError("urgency_level must be an integer between 1 and 5")
    return urgency_level


def _preview(content: str) -> str:
    if len(content) <= _COMMENT_PREVIEW_LENGTH:
        return content
    return content[:_COMMENT_PREVIEW_LENGTH] + "..."


def _require_admin_review(ticket: Ticket) -> None:
    if ticket.status is not TicketStatus.ADMIN_REVIEW:
        raise InvalidTicketStateError("Ticket is not in admin review status")


def _require_assignable(ticket: Ticket) -> None:
    if ticket.status is not TicketStatus.APPROVED:
        raise InvalidTicketStateError("Ticket must be approved before it can be assigned")
    if ticket.assigned_to is not None:
        raise InvalidTicketStateError("Ticket is already assigned")


def _require_active_assignment(ticket: Ticket) -> None:
    if ticket.status is not TicketStatus.IN_PROGRESS or ticket.assigned_to is None:
        raise InvalidTicketStateError("Ticket is not currently assigned")


def _require_reassignable(ticket: Ticket) -> None:
    if ticket.assigned_to is None:
        raise InvalidTicketStateError("Ticket is not currently assigned")
    if TicketStateMachine.is_terminal(ticket.status):
        raise InvalidTicketStateError(f"Ticket in status {ticket.status.value} can no longer be reassigned")


def _require_editable(ticket: Ticket) -> None:
    if TicketStateMachine.is_terminal(ticket.status):
        raise InvalidTicketStateError(f"Ticket in status {ticket.status.value} can no longer be edited")


def _check_transition(ticket: Ticket, *, target: TicketStatus) -> None:
    TicketStateMachine.assert_transition(ticket.status, target)
    if target is TicketStatus.IN_PROGRESS and ticket.assigned_to is None:
        raise InvalidTicketStateError("Ticket must be assigned before work can start")


class TicketWorkflowService:
    """Coordinates ticket lifecycle changes, approvals, assignments and their audit trail.

    Each mutating operation runs in one transaction. Ticket rows are written
    with a compare-and-set on ``version`` so concurrent writers either see the
    winner's state (and fail its precondition) or get a
    :class:`ConcurrencyConflictError` they may retry. Notifications are sent
    only once the transaction has committed.
    """

    def __init__(
        self,
        repository: TicketRepository,
        *,
        users: UserDirectory,
        factories: FactoryDirectory,
        notifier: Notifier | None = None,
        audit: AuditLog | None = None,
        approvals: ApprovalLedger | None = None,
        assignments: AssignmentLedger | None = None,
        clock: Clock = utcnow,
        ticket_number_prefix: str = "HIT",
        ticket_number_max_attempts: int = 5,
        self_assign_max_workload: int = 10,
        auto_assign_default_batch: int = 5,
    ) -> None:
        self._repository = repository
        self._users = users
        self._factories = factories
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._audit = audit or AuditLog()
        self._approvals = approvals or ApprovalLedger()
        self._assignments = assignments or AssignmentLedger()
        self._clock = clock
        self._ticket_number_prefix = ticket_number_prefix
        self._ticket_number_max_attempts = max(1, ticket_number_max_attempts)
        self._self_assign_max_workload = self_assign_max_workload
        self._auto_assign_default_batch = auto_assign_default_batch

    @property
    def repository(self) -> TicketRepository:
        return self._repository

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def create_ticket(
        self,
        *,
        title: str,
        description: str,
        priority: TicketPriority | str,
        factory_id: str,
        requester_id: str,
        category: str | None = None,
        urgency_level: int = 3,
        business_impact: str | None = None,
    ) -> Ticket:
        title = _require_text(title, "title", max_length=_TITLE_MAX_LENGTH)
        description = _require_text(description, "description")
        parsed_priority = _parse_enum(TicketPriority, priority, "priority")
        urgency_level = _validate_urgency(urgency_level)
        if category is not None:
            category = _require_text(category, "category", max_length=_CATEGORY_MAX_LENGTH)
        if not factory_id:
            raise TicketValidationError("factory_id is required")
        if not requester_id:
            raise TicketValidationError("requester_id is required")

        async with self._operation("create_ticket", factory_id=factory_id, actor_id=requester_id) as outbox:
            if not await self._factories.exists(factory_id):
                raise TicketValidationError(f"Factory {factory_id} does not exist")
            if await self._users.find_by_id(requester_id) is None:
                raise TicketValidationError(f"Requester {requester_id} does not exist")
            admins = await self._users.find_active_by_role_and_factory([UserRole.ADMIN])

            ticket = await self._insert_numbered(
                title=title,
                description=description,
                priority=parsed_priority,
                factory_id=factory_id,
                requester_id=requester_id,
                category=category,
                urgency_level=urgency_level,
                business_impact=business_impact,
            )
            for admin in admins:
                outbox.add(
                    admin.id,
                    "ticket_created",
                    "New Ticket Created",
                    f"New ticket #{ticket.ticket_number}: {ticket.title}",
                    ticket.id,
                )

        logger.info(
            "Created ticket %s",
            ticket.ticket_number,
            extra={"ticket_id": ticket.id, "priority": ticket.priority.value, "factory_id": factory_id},
        )
        return ticket

    async def transition_status(
        self,
        ticket_id: str,
        *,
        actor_id: str,
        new_status: TicketStatus | str,
        comment: str | None = None,
    ) -> Ticket:
        """Move a ticket along the lifecycle graph.

        Entering ``approved`` or ``rejected`` updates the approval record the
        same way :meth:`decide` does, and entering ``completed`` stamps the
        active assignment as done.
        """

        target = _parse_enum(TicketStatus, new_status, "status")
        check = partial(_check_transition, target=target)

        async with self._operation("transition_status", ticket_id=ticket_id, actor_id=actor_id) as outbox:
            actor = await self._users.find_by_id(actor_id)
            admins = (
                await self._users.find_active_by_role_and_factory([UserRole.ADMIN])
                if target is TicketStatus.ADMIN_REVIEW
                else []
            )
            now = self._clock()
            async with self._repository.transaction() as session:
                ticket = await self._load(session, ticket_id)
                check(ticket)
                updated = await self._write(
                    session,
                    ticket,
                    check,
                    status=target,
                    updated_at=now,
                    **self._entry_stamp(ticket, target, now),
                )

                if target is TicketStatus.ADMIN_REVIEW:
                    await self._approvals.open_for_review(session, ticket_id, now=now)
                elif target in (TicketStatus.APPROVED, TicketStatus.REJECTED):
                    await self._approvals.decide(
                        session,
                        ticket_id,
                        admin_id=actor_id,
                        decision=ApprovalDecision(target.value),
                        reason=comment,
                        now=now,
                    )
                elif target is TicketStatus.COMPLETED:
                    await self._assignments.mark_completed(session, ticket_id, now=now)

                await self._audit.record(
                    session,
                    ticket_id=ticket_id,
                    actor_id=actor_id,
                    action=AuditAction.STATUS_CHANGED,
                    created_at=now,
                    field_name="status",
                    old_value=ticket.status.value,
                    new_value=target.value,
                    comment=comment,
                    metadata={
                        "previous_status": ticket.status.value,
                        "workflow_step": f"{ticket.status.value}->{target.value}",
                        "user_role": actor.role.value if actor else None,
                    },
                )

            if target is TicketStatus.ADMIN_REVIEW:
                for admin in admins:
                    outbox.add(
                        admin.id,
                        "ticket_review_required",
                        "Ticket Requires Review",
                        f"Ticket #{updated.ticket_number} is awaiting admin review",
                        updated.id,
                    )
            elif target in (TicketStatus.APPROVED, TicketStatus.REJECTED):
                self._queue_decision(outbox, updated, ApprovalDecision(target.value), comment)
            elif target is TicketStatus.COMPLETED:
                outbox.add(
                    updated.requester_id,
                    "ticket_completed",
                    "Ticket Completed",
                    f"Your ticket #{updated.ticket_number} has been completed",
                    updated.id,
                )

        logger.info(
            "Ticket %s moved from %s to %s",
            updated.ticket_number,
            ticket.status.value,
            target.value,
            extra={"ticket_id": ticket_id, "actor_id": actor_id},
        )
        return updated

    async def decide(
        self,
        ticket_id: str,
        *,
        admin_id: str,
        decision: ApprovalDecision | str,
        reason: str | None = None,
    ) -> Ticket:
        outcome = self._parse_decision(decision)
        target = TicketStatus(outcome.value)

        async with self._operation("decide", ticket_id=ticket_id, actor_id=admin_id) as outbox:
            now = self._clock()
            async with self._repository.transaction() as session:
                ticket = await self._load(session, ticket_id)
                _require_admin_review(ticket)
                updated = await self._write(
                    session,
                    ticket,
                    _require_admin_review,
                    status=target,
                    updated_at=now,
                    **self._entry_stamp(ticket, target, now),
                )
                await self._approvals.decide(
                    session, ticket_id, admin_id=admin_id, decision=outcome, reason=reason, now=now
                )
                await self._audit.record(
                    session,
                    ticket_id=ticket_id,
                    actor_id=admin_id,
                    action=AuditAction(outcome.value),
                    created_at=now,
                    field_name="status",
                    old_value=ticket.status.value,
                    new_value=target.value,
                    comment=reason,
                    metadata={"decision": outcome.value},
                )
            self._queue_decision(outbox, updated, outcome, reason)

        logger.info(
            "Ticket %s %s",
            updated.ticket_number,
            outcome.value,
            extra={"ticket_id": ticket_id, "actor_id": admin_id},
        )
        return updated

    async def bulk_decide(
        self,
        ticket_ids: Iterable[str],
        *,
        admin_id: str,
        decision: ApprovalDecision | str,
        reason: str | None = None,
    ) -> BulkDecisionResult:
        """Apply one decision to many tickets; each ticket succeeds or fails on its own."""

        outcome = self._parse_decision(decision)
        processed: list[Ticket] = []
        failed: list[DecisionFailure] = []
        for ticket_id in ticket_ids:
            try:
                processed.append(await self.decide(ticket_id, admin_id=admin_id, decision=outcome, reason=reason))
            except WorkflowError as exc:
                logger.warning(
                    "Bulk decision skipped ticket %s: %s",
                    ticket_id,
                    exc,
                    extra={"ticket_id": ticket_id, "error_kind": exc.kind},
                )
                failed.append(DecisionFailure(ticket_id=ticket_id, error_kind=exc.kind, message=str(exc)))
        return BulkDecisionResult(processed=processed, failed=failed)

    async def update_details(
        self,
        ticket_id: str,
        *,
        actor_id: str,
        title: str | None = None,
        description: str | None = None,
        category: str | None = None,
        urgency_level: int | None = None,
        business_impact: str | None = None,
    ) -> Ticket:
        requested: dict[str, Any] = {}
        if title is not None:
            requested["title"] = _require_text(title, "title", max_length=_TITLE_MAX_LENGTH)
        if description is not None:
            requested["description"] = _require_text(description, "description")
        if category is not None:
            requested["category"] = _require_text(category, "category", max_length=_CATEGORY_MAX_LENGTH)
        if urgency_level is not None:
            requested["urgency_level"] = _validate_urgency(urgency_level)
        if business_impact is not None:
            requested["business_impact"] = business_impact
        if not requested:
            raise TicketValidationError("No fields provided for update")

        async with self._operation("update_details", ticket_id=ticket_id, actor_id=actor_id):
            now = self._clock()
            async with self._repository.transaction() as session:
                ticket = await self._load(session, ticket_id)
                _require_editable(ticket)
                changes = {
                    field: value for field, value in requested.items() if getattr(ticket, field) != value
                }
                if not changes:
                    return ticket
                updated = await self._write(session, ticket, _require_editable, updated_at=now, **changes)
                for field, value in changes.items():
                    previous = getattr(ticket, field)
                    await self._audit.record(
                        session,
                        ticket_id=ticket_id,
                        actor_id=actor_id,
                        action=AuditAction.UPDATED,
                        created_at=now,
                        field_name=field,
                        old_value=None if previous is None else str(previous),
                        new_value=str(value),
                    )
        return updated

    async def add_comment(
        self,
        ticket_id: str,
        *,
        author_id: str,
        content: str,
        is_internal: bool = False,
    ) -> Comment:
        content = _require_text(content, "content")

        async with self._operation("add_comment", ticket_id=ticket_id, actor_id=author_id) as outbox:
            author = await self._users.find_by_id(author_id)
            if author is None:
                raise ResourceNotFoundError(f"User {author_id} not found")
            internal = is_internal and author.role in STAFF_ROLES
            now = self._clock()
            comment = Comment(
                id=str(uuid.uuid4()),
                ticket_id=ticket_id,
                author_id=author_id,
                content=content,
                is_internal=internal,
                created_at=now,
            )
            async with self._repository.transaction() as session:
                ticket = await self._load(session, ticket_id)
                await self._repository.insert_comment(session, comment)
                await self._audit.record(
                    session,
                    ticket_id=ticket_id,
                    actor_id=author_id,
                    action=AuditAction.COMMENTED,
                    created_at=now,
                    field_name="comment",
                    new_value=_preview(content),
                    metadata={"comment_id": comment.id, "is_internal": internal},
                )

            if not internal:
                recipient = ticket.assigned_to if author_id == ticket.requester_id else ticket.requester_id
                if recipient and recipient != author_id:
                    outbox.add(
                        recipient,
                        "new_comment",
                        "New Comment",
                        f"New comment on ticket #{ticket.ticket_number}",
                        ticket.id,
                    )
        return comment

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------
    async def assign(
        self,
        ticket_id: str,
        *,
        assigner_id: str,
        assignee_id: str,
        reason: str | None = None,
    ) -> Ticket:
        async with self._operation("assign", ticket_id=ticket_id, actor_id=assigner_id) as outbox:
            assignee = await self._require_assignee(assignee_id)
            return await self._assign_in_transaction(
                outbox, ticket_id, assignee, assigner_id=assigner_id, reason=reason, mode="manual"
            )

    async def self_assign(self, ticket_id: str, *, user_id: str, notes: str | None = None) -> Ticket:
        async with self._operation("self_assign", ticket_id=ticket_id, actor_id=user_id) as outbox:
            user = await self._require_assignee(user_id)

            async def check_capacity(session: AsyncSession, ticket: Ticket) -> None:
                if user.role is UserRole.SUPPORT_STAFF and user.factory_id != ticket.factory_id:
                    raise TicketValidationError("Support staff can only take tickets from their own factory")
                loads = await self._assignments.workloads(session, [user.id])
                workload = loads.get(user.id, 0)
                if workload >= self._self_assign_max_workload:
                    raise CapacityExceededError(user.id, workload=workload, limit=self._self_assign_max_workload)

            return await self._assign_in_transaction(
                outbox,
                ticket_id,
                user,
                assigner_id=user.id,
                reason=notes or "Self-assigned",
                mode="self",
                before_write=check_capacity,
            )

    async def reassign(
        self,
        ticket_id: str,
        *,
        actor_id: str,
        new_assignee_id: str,
        reason: str | None = None,
    ) -> Ticket:
        async with self._operation("reassign", ticket_id=ticket_id, actor_id=actor_id) as outbox:
            assignee = await self._require_assignee(new_assignee_id)
            now = self._clock()
            async with self._repository.transaction() as session:
                ticket = await self._load(session, ticket_id)
                _require_reassignable(ticket)
                if ticket.assigned_to == assignee.id:
                    raise TicketValidationError("Ticket is already assigned to this user")
                previous = await self._assignments.active_for(session, ticket_id)
                updated = await self._write(
                    session,
                    ticket,
                    _require_reassignable,
                    assigned_to=assignee.id,
                    updated_at=now,
                )
                # A completed ticket hands its completion stamp to the new owner.
                record = await self._assignments.activate(
                    session,
                    ticket_id=ticket_id,
                    assignee_id=assignee.id,
                    assigner_id=actor_id,
                    reason=reason,
                    now=now,
                    completed_at=previous.completed_at if previous else None,
                )
                await self._audit.record(
                    session,
                    ticket_id=ticket_id,
                    actor_id=actor_id,
                    action=AuditAction.ASSIGNED,
                    created_at=now,
                    field_name="assigned_to",
                    old_value=ticket.assigned_to,
                    new_value=assignee.id,
                    comment=reason,
                    metadata={
                        "mode": "reassign",
                        "assignment_id": record.id,
                        "previous_assignment_id": previous.id if previous else None,
                        "status": ticket.status.value,
                    },
                )

            outbox.add(
                ticket.assigned_to,
                "ticket_reassigned",
                "Ticket Reassigned",
                f"Ticket #{updated.ticket_number} has been reassigned to another team member",
                updated.id,
            )
            outbox.add(
                assignee.id,
                "ticket_assigned",
                "Ticket Assigned",
                f"You have been assigned ticket #{updated.ticket_number}: {updated.title}",
                updated.id,
            )
        return updated

    async def unassign(self, ticket_id: str, *, actor_id: str, reason: str | None = None) -> Ticket:
        """Release an in-progress ticket back to the approved pool."""

        async with self._operation("unassign", ticket_id=ticket_id, actor_id=actor_id) as outbox:
            now = self._clock()
            async with self._repository.transaction() as session:
                ticket = await self._load(session, ticket_id)
                _require_active_assignment(ticket)
                previous = await self._assignments.active_for(session, ticket_id)
                updated = await self._write(
                    session,
                    ticket,
                    _require_active_assignment,
                    status=TicketStatus.APPROVED,
                    assigned_to=None,
                    updated_at=now,
                )
                await self._assignments.deactivate(session, ticket_id)
                await self._audit.record(
                    session,
                    ticket_id=ticket_id,
                    actor_id=actor_id,
                    action=AuditAction.ASSIGNED,
                    created_at=now,
                    field_name="assigned_to",
                    old_value=ticket.assigned_to,
                    new_value=None,
                    comment=reason,
                    metadata={
                        "mode": "unassign",
                        "previous_assignment_id": previous.id if previous else None,
                        "previous_status": ticket.status.value,
                        "status": TicketStatus.APPROVED.value,
                    },
                )

            outbox.add(
                ticket.assigned_to,
                "ticket_unassigned",
                "Ticket Unassigned",
                f"You have been unassigned from ticket #{updated.ticket_number}",
                updated.id,
            )
        return updated

    async def auto_assign(
        self,
        factory_id: str,
        *,
        actor_id: str,
        max_assignments: int | None = None,
    ) -> AutoAssignResult:
        """Spread approved, unassigned tickets of a factory across its least loaded staff.

        Every allocation commits on its own; a ticket that cannot be assigned
        is reported in ``failed`` and the batch moves on.
        """

        limit = self._auto_assign_default_batch if max_assignments is None else max_assignments
        if not factory_id:
            raise TicketValidationError("Factory ID required")
        if limit < 1:
            raise TicketValidationError("max_assignments must be at least 1")

        async with self._operation("auto_assign", factory_id=factory_id, actor_id=actor_id):
            if not await self._factories.exists(factory_id):
                raise TicketValidationError(f"Factory {factory_id} does not exist")
            staff = await self._users.find_active_by_role_and_factory(ASSIGNABLE_ROLES, factory_id)
            async with self._repository.session() as session:
                tickets = await self._repository.list_unassigned_approved(
                    session, factory_id=factory_id, limit=limit
                )
                if not tickets:
                    return AutoAssignResult(assigned=[], failed=[])
                if not staff:
                    raise TicketValidationError("No available support staff found for this factory")
                loads = await self._assignments.workloads(session, [member.id for member in staff])

            members = {member.id: member for member in staff}
            balancer = WorkloadBalancer((member.id, loads.get(member.id, 0)) for member in staff)
            assigned: list[AssignmentOutcome] = []
            failed: list[AssignmentFailure] = []

            for ticket in tickets:
                staff_id = balancer.candidate()
                try:
                    async with self._operation("assign", ticket_id=ticket.id, actor_id=actor_id) as outbox:
                        await self._assign_in_transaction(
                            outbox,
                            ticket.id,
                            members[staff_id],
                            assigner_id=actor_id,
                            reason="Auto-assigned based on workload",
                            mode="auto",
                        )
                except WorkflowError as exc:
                    logger.warning(
                        "Auto-assign skipped ticket %s: %s",
                        ticket.ticket_number,
                        exc,
                        extra={"ticket_id": ticket.id, "error_kind": exc.kind, "factory_id": factory_id},
                    )
                    failed.append(
                        AssignmentFailure(
                            ticket_id=ticket.id,
                            ticket_number=ticket.ticket_number,
                            attempted_assignee=staff_id,
                            error_kind=exc.kind,
                            message=str(exc),
                        )
                    )
                    continue
                balancer.record_assignment(staff_id)
                assigned.append(
                    AssignmentOutcome(ticket_id=ticket.id, ticket_number=ticket.ticket_number, assigned_to=staff_id)
                )

        logger.info(
            "Auto-assigned %d of %d tickets",
            len(assigned),
            len(tickets),
            extra={"factory_id": factory_id, "actor_id": actor_id},
        )
        return AutoAssignResult(assigned=assigned, failed=failed)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_ticket(self, ticket_id: str) -> Ticket:
        async with self._operation("get_ticket", ticket_id=ticket_id):
            async with self._repository.session() as session:
                return await self._load(session, ticket_id)

    async def list_tickets(
        self,
        *,
        status: TicketStatus | str | None = None,
        priority: TicketPriority | str | None = None,
        factory_id: str | None = None,
        assigned_to: str | None = None,
    ) -> list[Ticket]:
        parsed_status = None if status is None else _parse_enum(TicketStatus, status, "status")
        parsed_priority = None if priority is None else _parse_enum(TicketPriority, priority, "priority")
        async with self._operation("list_tickets", factory_id=factory_id):
            async with self._repository.session() as session:
                return await self._repository.list_tickets(
                    session,
                    status=parsed_status,
                    priority=parsed_priority,
                    factory_id=factory_id,
                    assigned_to=assigned_to,
                )

    async def list_overdue(self, *, factory_id: str | None = None) -> list[Ticket]:
        async with self._operation("list_overdue", factory_id=factory_id):
            now = self._clock()
            async with self._repository.session() as session:
                tickets = await self._repository.list_open(session, factory_id=factory_id)
        return [ticket for ticket in tickets if is_overdue(ticket, now)]

    async def get_audit_trail(self, ticket_id: str) -> list[AuditEntry]:
        async with self._operation("get_audit_trail", ticket_id=ticket_id):
            async with self._repository.session() as session:
                await self._load(session, ticket_id)
                return await self._audit.history(session, ticket_id)

    async def get_assignment_history(self, ticket_id: str) -> list[AssignmentRecord]:
        async with self._operation("get_assignment_history", ticket_id=ticket_id):
            async with self._repository.session() as session:
                await self._load(session, ticket_id)
                return await self._assignments.history(session, ticket_id)

    async def get_approval(self, ticket_id: str) -> ApprovalRecord | None:
        async with self._operation("get_approval", ticket_id=ticket_id):
            async with self._repository.session() as session:
                await self._load(session, ticket_id)
                return await self._approvals.get(session, ticket_id)

    async def approval_history(
        self,
        *,
        admin_id: str | None = None,
        decision: ApprovalDecision | str | None = None,
        decided_from: datetime | None = None,
        decided_to: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ApprovalHistory:
        """Decided approvals, most recent decision first, one page at a time."""

        outcome = None if decision is None else self._parse_decision(decision)
        decided_from = ensure_datetime(decided_from)
        decided_to = ensure_datetime(decided_to)
        if page < 1:
            raise TicketValidationError("page must be at least 1")
        if not 1 <= limit <= _HISTORY_MAX_LIMIT:
            raise TicketValidationError(f"limit must be between 1 and {_HISTORY_MAX_LIMIT}")
        if decided_from is not None and decided_to is not None and decided_from > decided_to:
            raise TicketValidationError("date_from must not be after date_to")

        async with self._operation("approval_history", admin_id=admin_id):
            async with self._repository.session() as session:
                items, total = await self._approvals.history(
                    session,
                    admin_id=admin_id,
                    decision=outcome,
                    decided_from=decided_from,
                    decided_to=decided_to,
                    limit=limit,
                    offset=(page - 1) * limit,
                )
        return ApprovalHistory(items=items, total=total, page=page, limit=limit)

    async def list_comments(self, ticket_id: str, *, include_internal: bool = False) -> Sequence[Comment]:
        async with self._operation("list_comments", ticket_id=ticket_id):
            async with self._repository.session() as session:
                await self._load(session, ticket_id)
                comments = await self._repository.list_comments(session, ticket_id)
        if include_internal:
            return comments
        return [comment for comment in comments if not comment.is_internal]

    async def team_workload(self, *, factory_id: str | None = None) -> list[StaffWorkload]:
        """Active work per staff member, least busy first."""

        async with self._operation("team_workload", factory_id=factory_id):
            staff = await self._users.find_active_by_role_and_factory(ASSIGNABLE_ROLES, factory_id)
            now = self._clock()
            async with self._repository.session() as session:
                tickets = await self._repository.list_assigned_to(
                    session, [member.id for member in staff], WORKLOAD_STATUSES
                )

        rows = {
            member.id: StaffWorkload(user_id=member.id, full_name=member.full_name, factory_id=member.factory_id)
            for member in staff
        }
        for ticket in tickets:
            row = rows.get(ticket.assigned_to or "")
            if row is None:
                continue
            row.total += 1
            if ticket.priority in _HIGH_PRIORITIES:
                row.high_priority += 1
            if is_overdue(ticket, now):
                row.overdue += 1
            if ticket.status is TicketStatus.IN_PROGRESS:
                row.in_progress += 1
        return sorted(rows.values(), key=lambda row: (row.total, row.full_name))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def _operation(self, name: str, **attributes: str | None) -> AsyncIterator[NotificationOutbox]:
        outbox = NotificationOutbox()
        with tracer.start_as_current_span(f"ticket_workflow.{name}") as span:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(f"helpdesk.{key}", value)
            try:
                yield outbox
            except IntegrityError as exc:
                logger.warning(
                    "Integrity conflict during %s", name, extra={"operation": name, **attributes}
                )
                raise ConcurrencyConflictError(
                    f"Concurrent update detected during {name}; retry the operation"
                ) from exc
            except SQLAlchemyError as exc:
                logger.exception("Storage failure during %s", name, extra={"operation": name, **attributes})
                raise StorageError(f"Storage failure during {name}") from exc
        await outbox.dispatch(self._notifier)

    async def _load(self, session: AsyncSession, ticket_id: str) -> Ticket:
        ticket = await self._repository.get(session, ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    async def _write(
        self,
        session: AsyncSession,
        ticket: Ticket,
        check: Callable[[Ticket], None],
        **values: Any,
    ) -> Ticket:
        """Compare-and-set ``values`` on ``ticket``.

        When another writer got there first the ticket is re-read and ``check``
        re-run, so the caller sees the precondition error the new state
        produces; if the precondition still holds the write is reported as a
        conflict.
        """

        if not await self._repository.compare_and_set(session, ticket, **values):
            current = await self._load(session, ticket.id)
            check(current)
            logger.info(
                "Version conflict on ticket %s",
                ticket.ticket_number,
                extra={"ticket_id": ticket.id, "expected_version": ticket.version, "version": current.version},
            )
            raise ConcurrencyConflictError(f"Ticket {ticket.id} was modified concurrently; retry the operation")
        return await self._load(session, ticket.id)

    async def _insert_numbered(
        self,
        *,
        title: str,
        description: str,
        priority: TicketPriority,
        factory_id: str,
        requester_id: str,
        category: str | None,
        urgency_level: int,
        business_impact: str | None,
    ) -> Ticket:
        number: str | None = None
        for attempt in range(1, self._ticket_number_max_attempts + 1):
            now = self._clock()
            try:
                async with self._repository.transaction() as session:
                    number = await self._repository.next_ticket_number(
                        session, prefix=self._ticket_number_prefix, day=now
                    )
                    ticket = Ticket(
                        id=str(uuid.uuid4()),
                        ticket_number=number,
                        title=title,
                        description=description,
                        priority=priority,
                        status=TicketStateMachine.initial_state(),
                        factory_id=factory_id,
                        requester_id=requester_id,
                        urgency_level=urgency_level,
                        category=category,
                        business_impact=business_impact,
                        sla_deadline=compute_deadline(priority, now),
                        created_at=now,
                        updated_at=now,
                    )
                    await self._repository.insert(session, ticket)
                    await self._audit.record(
                        session,
                        ticket_id=ticket.id,
                        actor_id=requester_id,
                        action=AuditAction.CREATED,
                        created_at=now,
                        field_name="status",
                        new_value=ticket.status.value,
                        metadata={
                            "ticket_number": number,
                            "priority": priority.value,
                            "factory_id": factory_id,
                            "sla_deadline": ticket.sla_deadline.isoformat() if ticket.sla_deadline else None,
                        },
                    )
                return ticket
            except IntegrityError as exc:
                if not self._repository.is_ticket_number_conflict(exc):
                    raise
                logger.warning(
                    "Ticket number %s already taken (attempt %d/%d)",
                    number,
                    attempt,
                    self._ticket_number_max_attempts,
                    extra={"factory_id": factory_id},
                )
        raise ConcurrencyConflictError("Could not allocate a unique ticket number; retry the operation")

    async def _assign_in_transaction(
        self,
        outbox: NotificationOutbox,
        ticket_id: str,
        assignee: DirectoryUser,
        *,
        assigner_id: str,
        reason: str | None,
        mode: str,
        before_write: Callable[[AsyncSession, Ticket], Any] | None = None,
    ) -> Ticket:
        now = self._clock()
        async with self._repository.transaction() as session:
            ticket = await self._load(session, ticket_id)
            _require_assignable(ticket)
            if before_write is not None:
                await before_write(session, ticket)
            updated = await self._write(
                session,
                ticket,
                _require_assignable,
                status=TicketStatus.IN_PROGRESS,
                assigned_to=assignee.id,
                updated_at=now,
                **self._entry_stamp(ticket, TicketStatus.IN_PROGRESS, now),
            )
            record = await self._assignments.activate(
                session,
                ticket_id=ticket_id,
                assignee_id=assignee.id,
                assigner_id=assigner_id,
                reason=reason,
                now=now,
            )
            await self._audit.record(
                session,
                ticket_id=ticket_id,
                actor_id=assigner_id,
                action=AuditAction.ASSIGNED,
                created_at=now,
                field_name="assigned_to",
                old_value=ticket.assigned_to,
                new_value=assignee.id,
                comment=reason,
                metadata={
                    "mode": mode,
                    "assignment_id": record.id,
                    "previous_status": ticket.status.value,
                    "status": TicketStatus.IN_PROGRESS.value,
                },
            )

        if mode == "self":
            outbox.add(
                updated.requester_id,
                "ticket_assigned",
                "Ticket Assigned",
                f"Your ticket #{updated.ticket_number} has been assigned to {assignee.full_name or assignee.id}",
                updated.id,
            )
        elif mode == "auto":
            outbox.add(
                assignee.id,
                "ticket_assigned",
                "Ticket Auto-Assigned",
                f"Ticket #{updated.ticket_number} has been automatically assigned to you",
                updated.id,
            )
        else:
            outbox.add(
                assignee.id,
                "ticket_assigned",
                "Ticket Assigned",
                f"You have been assigned ticket #{updated.ticket_number}: {updated.title}",
                updated.id,
            )
        return updated

    async def _require_assignee(self, user_id: str) -> DirectoryUser:
        user = await self._users.find_by_id(user_id)
        if user is None:
            raise ResourceNotFoundError(f"User {user_id} not found")
        if not user.can_hold_assignments():
            raise TicketValidationError(f"User {user_id} cannot be assigned tickets")
        return user

    @staticmethod
    def _entry_stamp(ticket: Ticket, target: TicketStatus, now: datetime) -> dict[str, datetime]:
        column = TicketStateMachine.entry_timestamp(target)
        if column is None or getattr(ticket, column) is not None:
            return {}
        return {column: now}

    @staticmethod
    def _parse_decision(decision: ApprovalDecision | str) -> ApprovalDecision:
        outcome = _parse_enum(ApprovalDecision, decision, "decision")
        if outcome is ApprovalDecision.PENDING:
            raise TicketValidationError("Decision must be 'approved' or 'rejected'")
        return outcome

    @staticmethod
    def _queue_decision(
        outbox: NotificationOutbox, ticket: Ticket, outcome: ApprovalDecision, reason: str | None
    ) -> None:
        message = f"Your ticket #{ticket.ticket_number} has been {outcome.value}"
        if reason:
            message = f"{message}: {reason}"
        outbox.add(
            ticket.requester_id,
            f"ticket_{outcome.value}",
            f"Ticket {outcome.value.capitalize()}",
            message,
            ticket.id,
        )
