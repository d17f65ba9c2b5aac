"""Explicit state machine for the complaint lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Callable, Mapping, Sequence

from .errors import ConflictError, InvalidTransitionError, ValidationError

if TYPE_CHECKING:  # pragma: no cover
    from .models import Complaint, MediaRef


class ComplaintStatus(str, Enum):
    """Supported states for a complaint's lifecycle."""

    OPEN = "Open"
    ASSIGNED = "Assigned"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"
    CLOSED = "Closed"
    CANCELLED = "Cancelled"
    REOPENED = "Reopened"


class ComplaintEvent(str, Enum):
    """Events accepted by the state machine."""

    ASSIGN = "assign"
    START_WORK = "start_work"
    ADD_WORK_UPDATE = "add_work_update"
    RESOLVE = "resolve"
    CLOSE = "close"
    CANCEL = "cancel"
    REOPEN = "reopen"
    RATE = "rate"


TERMINAL_STATUSES: frozenset[ComplaintStatus] = frozenset({ComplaintStatus.CLOSED, ComplaintStatus.CANCELLED})
STAFFED_STATUSES: frozenset[ComplaintStatus] = frozenset(
    {ComplaintStatus.ASSIGNED, ComplaintStatus.IN_PROGRESS, ComplaintStatus.REOPENED}
)
ACTIVE_STATUSES: frozenset[ComplaintStatus] = frozenset(
    {ComplaintStatus.OPEN, ComplaintStatus.ASSIGNED, ComplaintStatus.IN_PROGRESS}
)


@dataclass(frozen=True, slots=True)
class TransitionContext:
    """Inputs carried alongside an event."""

    actor_id: str
    actor_role: str
    at: datetime
    staff_id: str | None = None
    text: str | None = None
    images: Sequence["MediaRef"] = field(default_factory=tuple)
    reason: str | None = None
    score: int | None = None
    comment: str | None = None


class ComplaintStateMachine:
    """Validate and apply complaint lifecycle transitions.

    ``_TRANSITIONS`` maps every event to the statuses it may be applied from and the
    resulting status. Validation always happens before the complaint is touched, so
    a rejected event leaves the complaint exactly as it was.
    """

    _TRANSITIONS: Mapping[ComplaintEvent, Mapping[ComplaintStatus, ComplaintStatus]] = {
        ComplaintEvent.ASSIGN: {
            ComplaintStatus.OPEN: ComplaintStatus.ASSIGNED,
            ComplaintStatus.REOPENED: ComplaintStatus.ASSIGNED,
        },
        ComplaintEvent.START_WORK: {
            ComplaintStatus.ASSIGNED: ComplaintStatus.IN_PROGRESS,
        },
        ComplaintEvent.ADD_WORK_UPDATE: {
            ComplaintStatus.ASSIGNED: ComplaintStatus.IN_PROGRESS,
            ComplaintStatus.IN_PROGRESS: ComplaintStatus.IN_PROGRESS,
        },
        ComplaintEvent.RESOLVE: {
            ComplaintStatus.IN_PROGRESS: ComplaintStatus.RESOLVED,
        },
        ComplaintEvent.CLOSE: {
            ComplaintStatus.RESOLVED: ComplaintStatus.CLOSED,
        },
        ComplaintEvent.CANCEL: {
            ComplaintStatus.OPEN: ComplaintStatus.CANCELLED,
            ComplaintStatus.ASSIGNED: ComplaintStatus.CANCELLED,
            ComplaintStatus.IN_PROGRESS: ComplaintStatus.CANCELLED,
            ComplaintStatus.REOPENED: ComplaintStatus.CANCELLED,
        },
        ComplaintEvent.REOPEN: {
            ComplaintStatus.CLOSED: ComplaintStatus.REOPENED,
            ComplaintStatus.RESOLVED: ComplaintStatus.REOPENED,
        },
        ComplaintEvent.RATE: {
            ComplaintStatus.RESOLVED: ComplaintStatus.RESOLVED,
            ComplaintStatus.CLOSED: ComplaintStatus.CLOSED,
        },
    }

    @classmethod
    def initial_state(cls) -> ComplaintStatus:
        return ComplaintStatus.OPEN

    @classmethod
    def can_apply(cls, current: ComplaintStatus, event: ComplaintEvent) -> bool:
        return current in cls._TRANSITIONS.get(event, {})

    @classmethod
    def target(cls, current: ComplaintStatus, event: ComplaintEvent) -> ComplaintStatus:
        sources = cls._TRANSITIONS.get(event, {})
        if current not in sources:
            raise InvalidTransitionError(current, event)
        return sources[current]

    @classmethod
    def allowed_events(cls, current: ComplaintStatus) -> tuple[ComplaintEvent, ...]:
        return tuple(event for event in ComplaintEvent if cls.can_apply(current, event))

    @classmethod
    def reachable_statuses(cls, current: ComplaintStatus) -> tuple[ComplaintStatus, ...]:
        """Statuses one event away from ``current``, in event order."""

        reachable: list[ComplaintStatus] = []
        for event in cls.allowed_events(current):
            destination = cls._TRANSITIONS[event][current]
            if destination != current and destination not in reachable:
                reachable.append(destination)
        return tuple(reachable)

    @classmethod
    def apply(cls, complaint: "Complaint", event: ComplaintEvent, context: TransitionContext) -> ComplaintStatus:
        """Apply ``event`` to ``complaint`` in place and return the previous status."""

        previous = complaint.status
        destination = cls.target(previous, event)
        _PRECHECKS.get(event, _no_precheck)(complaint, context)

        _EFFECTS[event](complaint, context)
        complaint.status = destination
        complaint.updated_at = context.at
        if destination != previous:
            complaint.record_status_change(
                from_status=previous,
                to_status=destination,
                event=event.value,
                actor=context.actor_id,
                actor_role=context.actor_role,
                reason=context.reason,
                at=context.at,
            )
        return previous


def _no_precheck(complaint: "Complaint", context: TransitionContext) -> None:
    return None


def _check_assign(complaint: "Complaint", context: TransitionContext) -> None:
    if not context.staff_id:
        raise ValidationError("A staff member is required to assign a complaint")


def _check_work_update(complaint: "Complaint", context: TransitionContext) -> None:
    if not context.text or not context.text.strip():
        raise ValidationError("Work update text is required")


def _check_reopen(complaint: "Complaint", context: TransitionContext) -> None:
    if complaint.last_assigned_staff is None:
        raise InvalidTransitionError(
            complaint.status, ComplaintEvent.REOPEN, "Complaint has no previous assignee to reopen with"
        )


def _check_rate(complaint: "Complaint", context: TransitionContext) -> None:
    if complaint.rating is not None:
        raise ConflictError("Complaint has already been rated", code="ALREADY_RATED")
    if context.score is None or not 1 <= context.score <= 5:
        raise ValidationError("Rating score must be between 1 and 5")


def _assign(complaint: "Complaint", context: TransitionContext) -> None:
    complaint.assigned_staff = context.staff_id
    complaint.last_assigned_staff = context.staff_id
    complaint.assigned_at = context.at
    complaint.assigned_by = context.actor_id


def _start_work(complaint: "Complaint", context: TransitionContext) -> None:
    complaint.sla.in_progress_at = complaint.sla.in_progress_at or context.at


def _add_work_update(complaint: "Complaint", context: TransitionContext) -> None:
    from .models import WorkUpdate

    _start_work(complaint, context)
    complaint.work_updates.append(
        WorkUpdate(
            author=context.actor_id,
            text=(context.text or "").strip(),
            images=list(context.images),
            timestamp=context.at,
        )
    )


def _resolve(complaint: "Complaint", context: TransitionContext) -> None:
    complaint.resolved_at = context.at
    complaint.sla.mark_resolved(created_at=complaint.created_at, at=context.at)
    complaint.assigned_staff = None


def _close(complaint: "Complaint", context: TransitionContext) -> None:
    complaint.closed_at = context.at


def _cancel(complaint: "Complaint", context: TransitionContext) -> None:
    complaint.assigned_staff = None
    complaint.cancelled_at = context.at
    complaint.cancellation_reason = context.reason


def _reopen(complaint: "Complaint", context: TransitionContext) -> None:
    complaint.resolved_at = None
    complaint.closed_at = None
    complaint.reopened_at = context.at
    complaint.sla.clear_resolution()
    complaint.assigned_staff = complaint.last_assigned_staff


def _rate(complaint: "Complaint", context: TransitionContext) -> None:
    from .models import Rating

    complaint.rating = Rating(score=int(context.score or 0), comment=context.comment, rated_at=context.at)


_PRECHECKS: Mapping[ComplaintEvent, Callable[["Complaint", TransitionContext], None]] = {
    ComplaintEvent.ASSIGN: _check_assign,
    ComplaintEvent.ADD_WORK_UPDATE: _check_work_update,
    ComplaintEvent.REOPEN: _check_reopen,
    ComplaintEvent.RATE: _check_rate,
}

_EFFECTS: Mapping[ComplaintEvent, Callable[["Complaint", TransitionContext], None]] = {
    ComplaintEvent.ASSIGN: _assign,
    ComplaintEvent.START_WORK: _start_work,
    ComplaintEvent.ADD_WORK_UPDATE: _add_work_update,
    ComplaintEvent.RESOLVE: _resolve,
    ComplaintEvent.CLOSE: _close,
    ComplaintEvent.CANCEL: _cancel,
    ComplaintEvent.REOPEN: _reopen,
    ComplaintEvent.RATE: _rate,
}

if set(_EFFECTS) != set(ComplaintEvent) or set(ComplaintStateMachine._TRANSITIONS) != set(ComplaintEvent):
    raise RuntimeError("Every complaint event needs a transition entry and an effect")
