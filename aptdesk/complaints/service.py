from __future__ import annotations

import inspect
import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterator, Mapping, Sequence
from uuid import uuid4

from opentelemetry import trace

from aptdesk.metrics import MetricsRegistry, register_default_metrics, track_duration
from aptdesk.metrics.definitions import (
    OPERATION_DURATION,
    OPERATIONS_TOTAL,
    TRANSITIONS_TOTAL,
    WRITE_CONFLICTS_TOTAL,
)

from . import notifications as channels
from .errors import (
    AuthorizationError,
    ComplaintError,
    ConcurrentModificationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import (
    Comment,
    CommentVisibility,
    Complaint,
    ComplaintCategory,
    ComplaintFilter,
    ComplaintPage,
    ComplaintPriority,
    InternalNote,
    Location,
    MediaRef,
    PriorityChange,
    SlaInfo,
    expected_resolution,
)
from .notifications import Audience, LifecycleOrchestrator
from .policy import Action, Actor, DenyReason, Role, can_perform, permitted_actions
from .repository import ComplaintRepository
from .state import (
    ACTIVE_STATUSES,
    ComplaintEvent,
    ComplaintStateMachine,
    ComplaintStatus,
    TransitionContext,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
COMMENT_MAX_LENGTH = 1000
MAX_PAGE_SIZE = 100

Mutation = Callable[[Complaint], "Awaitable[None] | None"]

_STATUS_EVENTS: Mapping[ComplaintStatus, tuple[ComplaintEvent, str]] = {
    ComplaintStatus.IN_PROGRESS: (ComplaintEvent.START_WORK, channels.TICKET_STATUS_UPDATED),
    ComplaintStatus.RESOLVED: (ComplaintEvent.RESOLVE, channels.TICKET_RESOLVED),
    ComplaintStatus.CLOSED: (ComplaintEvent.CLOSE, channels.TICKET_CLOSED),
    ComplaintStatus.CANCELLED: (ComplaintEvent.CANCEL, channels.TICKET_CANCELLED),
    ComplaintStatus.REOPENED: (ComplaintEvent.REOPEN, channels.TICKET_REOPENED),
}

_ACTION_EVENTS: Mapping[Action, ComplaintEvent] = {
    Action.ASSIGN: ComplaintEvent.ASSIGN,
    Action.ADD_WORK_UPDATE: ComplaintEvent.ADD_WORK_UPDATE,
    Action.RATE: ComplaintEvent.RATE,
    Action.REOPEN: ComplaintEvent.REOPEN,
    Action.CLOSE: ComplaintEvent.CLOSE,
    Action.CANCEL: ComplaintEvent.CANCEL,
}


def _lifecycle_allows(action: Action, complaint: Complaint) -> bool:
    """Whether the current status leaves room for ``action`` at all."""

    event = _ACTION_EVENTS.get(action)
    if event is not None:
        if not ComplaintStateMachine.can_apply(complaint.status, event):
            return False
        if event is ComplaintEvent.RATE:
            return complaint.rating is None
        if event is ComplaintEvent.REOPEN:
            return complaint.last_assigned_staff is not None
        return True
    if action is Action.UPDATE_STATUS:
        return any(
            target is not ComplaintStatus.ASSIGNED
            for target in ComplaintStateMachine.reachable_statuses(complaint.status)
        )
    if action is Action.UPDATE_PRIORITY:
        return not complaint.is_terminal
    return True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _required_text(value: str | None, field_name: str, max_length: int) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required")
    if len(text) > max_length:
        raise ValidationError(f"{field_name} must be at most {max_length} characters")
    return text


def visible_to(complaint: Complaint, role: Role) -> Complaint:
    """Strip staff-only discussion from a complaint before handing it to a resident."""

    if role is not Role.RESIDENT:
        return complaint
    return replace(
        complaint,
        comments=[comment for comment in complaint.comments if comment.visibility is CommentVisibility.PUBLIC],
        internal_notes=[],
    )


@dataclass(slots=True)
class ComplaintService:
    """High level orchestration for complaint lifecycle operations.

    Every mutating operation loads the complaint, authorizes the actor, applies the
    change and saves it with a version check. A lost race reruns the whole sequence
    against fresh state, up to ``max_write_attempts`` times.
    """

    repository: ComplaintRepository
    orchestrator: LifecycleOrchestrator
    max_write_attempts: int = 3
    max_active_complaints: int = 5
    reopen_window_days: int = 7
    clock: Callable[[], datetime] = _utcnow
    metrics: MetricsRegistry | None = None

    def __post_init__(self) -> None:
        if self.max_write_attempts < 1:
            raise ValueError("max_write_attempts must be at least 1")
        if self.metrics is not None:
            register_default_metrics(self.metrics)

    async def ensure_schema(self) -> None:
        await self.repository.ensure_schema()

    async def create_complaint(
        self,
        actor: Actor,
        *,
        title: str,
        description: str,
        category: ComplaintCategory,
        priority: ComplaintPriority = ComplaintPriority.MEDIUM,
        sub_category: str | None = None,
        location: Location | None = None,
        media: Sequence[MediaRef] = (),
    ) -> Complaint:
        with self._instrument("create_complaint"):
            self._authorize(actor, Action.CREATE)
            title = _required_text(title, "Title", TITLE_MAX_LENGTH)
            description = _required_text(description, "Description", DESCRIPTION_MAX_LENGTH)

            active = await self.repository.count_by_owner(actor.id, sorted(ACTIVE_STATUSES))
            if active >= self.max_active_complaints:
                raise ConflictError(
                    f"You already have {active} active complaints; resolve existing ones before filing more",
                    code="ACTIVE_COMPLAINT_LIMIT",
                )

            now = self.clock()
            status = ComplaintStateMachine.initial_state()
            complaint = Complaint(
                id=str(uuid4()),
                ticket_number=await self._next_ticket_number(now),
                title=title,
                description=description,
                category=category,
                priority=priority,
                status=status,
                created_by=actor.id,
                created_at=now,
                updated_at=now,
                sub_category=sub_category,
                location=location or Location(),
                media=list(media),
                sla=SlaInfo(expected_resolution=expected_resolution(now, priority)),
            )
            complaint.record_status_change(
                from_status=None,
                to_status=status,
                event="create",
                actor=actor.id,
                actor_role=actor.role.value,
                at=now,
            )
            stored = await self.repository.insert(complaint)
            logger.info(
                "Complaint created",
                extra={"ticket_id": stored.id, "ticket_number": stored.ticket_number, "created_by": actor.id},
            )
            await self.orchestrator.after_mutation(
                before_status=None,
                before_staff=None,
                complaint=stored,
                channel=channels.TICKET_CREATED,
                actor_id=actor.id,
            )
            return visible_to(stored, actor.role)

    async def get_complaint(self, actor: Actor, complaint_id: str) -> Complaint:
        with self._instrument("get_complaint"):
            complaint = await self._load(complaint_id)
            self._authorize(actor, Action.VIEW, complaint)
            return visible_to(complaint, actor.role)

    async def list_complaints(
        self,
        actor: Actor,
        *,
        status: ComplaintStatus | None = None,
        category: ComplaintCategory | None = None,
        priority: ComplaintPriority | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ComplaintPage:
        with self._instrument("list_complaints"):
            if page < 1:
                raise ValidationError("page must be at least 1")
            if not 1 <= limit <= MAX_PAGE_SIZE:
                raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

            criteria = ComplaintFilter(status=status, category=category, priority=priority)
            if actor.role is Role.RESIDENT:
                criteria.created_by = actor.id
            elif actor.role is Role.STAFF:
                criteria.handled_by = actor.id

            items, total = await self.repository.list(criteria, offset=(page - 1) * limit, limit=limit)
            return ComplaintPage(
                items=[visible_to(item, actor.role) for item in items], total=total, page=page, limit=limit
            )

    async def allowed_actions(self, actor: Actor, complaint_id: str) -> list[Action]:
        with self._instrument("allowed_actions"):
            complaint = await self._load(complaint_id)
            self._authorize(actor, Action.VIEW, complaint)
            window_closed = self._reopen_window_closed(complaint, self.clock())
            return [
                action
                for action in permitted_actions(actor.role, actor.id, complaint)
                if _lifecycle_allows(action, complaint)
                and not (action is Action.REOPEN and window_closed)
            ]

    async def assign(
        self, actor: Actor, complaint_id: str, *, staff_id: str | None = None, note: str | None = None
    ) -> Complaint:
        async def mutate(complaint: Complaint) -> None:
            ComplaintStateMachine.target(complaint.status, ComplaintEvent.ASSIGN)
            member = await self.orchestrator.select_staff(staff_id, complaint.category)
            ComplaintStateMachine.apply(
                complaint, ComplaintEvent.ASSIGN, self._context(actor, staff_id=member.id, reason=note)
            )

        return await self._mutate(
            actor, complaint_id, Action.ASSIGN, mutate, operation="assign", channel=channels.TICKET_ASSIGNED
        )

    async def add_work_update(
        self, actor: Actor, complaint_id: str, *, text: str, images: Sequence[MediaRef] = ()
    ) -> Complaint:
        def mutate(complaint: Complaint) -> None:
            ComplaintStateMachine.apply(
                complaint, ComplaintEvent.ADD_WORK_UPDATE, self._context(actor, text=text, images=tuple(images))
            )

        return await self._mutate(
            actor,
            complaint_id,
            Action.ADD_WORK_UPDATE,
            mutate,
            operation="add_work_update",
            channel=channels.WORK_UPDATE_ADDED,
        )

    async def update_status(
        self, actor: Actor, complaint_id: str, *, status: ComplaintStatus, reason: str | None = None
    ) -> Complaint:
        """Drive a complaint to ``status`` on behalf of an admin."""

        if status is ComplaintStatus.ASSIGNED:
            raise ValidationError("Use the assign operation to assign a complaint to staff")
        event, channel = _STATUS_EVENTS.get(status, (None, channels.TICKET_STATUS_UPDATED))

        def mutate(complaint: Complaint) -> None:
            if event is None:
                raise InvalidTransitionError(
                    complaint.status, "update_status", f"Status '{status.value}' cannot be set directly"
                )
            ComplaintStateMachine.apply(complaint, event, self._context(actor, reason=reason))

        return await self._mutate(
            actor, complaint_id, Action.UPDATE_STATUS, mutate, operation="update_status", channel=channel
        )

    async def rate(self, actor: Actor, complaint_id: str, *, score: int, comment: str | None = None) -> Complaint:
        def mutate(complaint: Complaint) -> None:
            ComplaintStateMachine.apply(
                complaint, ComplaintEvent.RATE, self._context(actor, score=score, comment=comment)
            )

        return await self._mutate(
            actor, complaint_id, Action.RATE, mutate, operation="rate", channel=channels.TICKET_RATED
        )

    async def reopen(self, actor: Actor, complaint_id: str, *, reason: str | None = None) -> Complaint:
        def mutate(complaint: Complaint) -> None:
            context = self._context(actor, reason=reason)
            if self._reopen_window_closed(complaint, context.at):
                raise InvalidTransitionError(
                    complaint.status,
                    ComplaintEvent.REOPEN,
                    f"Complaints can only be reopened within {self.reopen_window_days} days of resolution",
                )
            ComplaintStateMachine.apply(complaint, ComplaintEvent.REOPEN, context)

        return await self._mutate(
            actor, complaint_id, Action.REOPEN, mutate, operation="reopen", channel=channels.TICKET_REOPENED
        )

    async def close(self, actor: Actor, complaint_id: str, *, reason: str | None = None) -> Complaint:
        def mutate(complaint: Complaint) -> None:
            ComplaintStateMachine.apply(complaint, ComplaintEvent.CLOSE, self._context(actor, reason=reason))

        return await self._mutate(
            actor, complaint_id, Action.CLOSE, mutate, operation="close", channel=channels.TICKET_CLOSED
        )

    async def cancel(self, actor: Actor, complaint_id: str, *, reason: str | None = None) -> Complaint:
        def mutate(complaint: Complaint) -> None:
            ComplaintStateMachine.apply(complaint, ComplaintEvent.CANCEL, self._context(actor, reason=reason))

        return await self._mutate(
            actor, complaint_id, Action.CANCEL, mutate, operation="cancel", channel=channels.TICKET_CANCELLED
        )

    async def add_comment(
        self,
        actor: Actor,
        complaint_id: str,
        *,
        text: str,
        visibility: CommentVisibility = CommentVisibility.PUBLIC,
    ) -> Complaint:
        body = _required_text(text, "Comment text", COMMENT_MAX_LENGTH)
        if visibility is CommentVisibility.STAFF and actor.role is Role.RESIDENT:
            raise AuthorizationError(
                "Residents cannot post staff-only comments", code=DenyReason.ROLE_FORBIDDEN.value
            )

        def mutate(complaint: Complaint) -> None:
            now = self.clock()
            complaint.comments.append(
                Comment(author=actor.id, author_role=actor.role.value, text=body, timestamp=now, visibility=visibility)
            )
            complaint.updated_at = now

        audience = Audience.STAFF_ONLY if visibility is CommentVisibility.STAFF else Audience.EVERYONE
        return await self._mutate(
            actor,
            complaint_id,
            Action.ADD_COMMENT,
            mutate,
            operation="add_comment",
            channel=channels.TICKET_COMMENT_ADDED,
            audience=audience,
        )

    async def add_admin_media(self, actor: Actor, complaint_id: str, *, media: Sequence[MediaRef]) -> Complaint:
        if not media:
            raise ValidationError("At least one media reference is required")

        def mutate(complaint: Complaint) -> None:
            now = self.clock()
            complaint.admin_media.extend(
                item if item.uploaded_at is not None else replace(item, uploaded_at=now) for item in media
            )
            complaint.updated_at = now

        return await self._mutate(
            actor,
            complaint_id,
            Action.ADD_ADMIN_MEDIA,
            mutate,
            operation="add_admin_media",
            channel=channels.ADMIN_MEDIA_ADDED,
        )

    async def add_internal_note(self, actor: Actor, complaint_id: str, *, text: str) -> Complaint:
        body = _required_text(text, "Note text", COMMENT_MAX_LENGTH)

        def mutate(complaint: Complaint) -> None:
            now = self.clock()
            complaint.internal_notes.append(InternalNote(author=actor.id, text=body, timestamp=now))
            complaint.updated_at = now

        return await self._mutate(
            actor,
            complaint_id,
            Action.ADD_INTERNAL_NOTE,
            mutate,
            operation="add_internal_note",
            channel=channels.INTERNAL_NOTE_ADDED,
            audience=Audience.STAFF_ONLY,
        )

    async def update_priority(self, actor: Actor, complaint_id: str, *, priority: ComplaintPriority) -> Complaint:
        def mutate(complaint: Complaint) -> None:
            if complaint.is_terminal:
                raise InvalidTransitionError(
                    complaint.status, "update_priority", "Priority cannot change once a complaint is closed or cancelled"
                )
            if complaint.priority is priority:
                raise ValidationError(f"Complaint priority is already '{priority.value}'")
            now = self.clock()
            complaint.priority_history.append(
                PriorityChange(old_value=complaint.priority, new_value=priority, changed_by=actor.id, timestamp=now)
            )
            complaint.priority = priority
            if complaint.resolved_at is None:
                complaint.sla.expected_resolution = expected_resolution(complaint.created_at, priority)
            complaint.updated_at = now

        return await self._mutate(
            actor,
            complaint_id,
            Action.UPDATE_PRIORITY,
            mutate,
            operation="update_priority",
            channel=channels.TICKET_PRIORITY_UPDATED,
        )

    async def _mutate(
        self,
        actor: Actor,
        complaint_id: str,
        action: Action,
        mutate: Mutation,
        *,
        operation: str,
        channel: str,
        audience: Audience = Audience.EVERYONE,
    ) -> Complaint:
        with self._instrument(operation, complaint_id=complaint_id) as span:
            for attempt in range(1, self.max_write_attempts + 1):
                complaint = await self._load(complaint_id)
                self._authorize(actor, action, complaint)
                before_status = complaint.status
                before_staff = complaint.assigned_staff
                expected_version = complaint.version

                result = mutate(complaint)
                if inspect.isawaitable(result):
                    await result

                try:
                    saved = await self.repository.save(complaint, expected_version=expected_version)
                except ConcurrentModificationError:
                    if self.metrics is not None:
                        self.metrics.counter(WRITE_CONFLICTS_TOTAL).inc(labels={"operation": operation})
                    if attempt >= self.max_write_attempts:
                        logger.warning(
                            "Giving up after repeated write conflicts",
                            extra={"ticket_id": complaint_id, "operation": operation, "attempts": attempt},
                        )
                        raise
                    logger.info(
                        "Write conflict, retrying against fresh state",
                        extra={"ticket_id": complaint_id, "operation": operation, "attempt": attempt},
                    )
                    continue

                span.set_attribute("complaint.attempts", attempt)
                if saved.status != before_status:
                    span.set_attribute("complaint.to_status", saved.status.value)
                    if self.metrics is not None:
                        self.metrics.counter(TRANSITIONS_TOTAL).inc(
                            labels={"from_status": before_status.value, "to_status": saved.status.value}
                        )
                await self.orchestrator.after_mutation(
                    before_status=before_status,
                    before_staff=before_staff,
                    complaint=saved,
                    channel=channel,
                    actor_id=actor.id,
                    audience=audience,
                )
                return visible_to(saved, actor.role)

        raise ConcurrentModificationError(f"Complaint {complaint_id} could not be saved")

    async def _load(self, complaint_id: str) -> Complaint:
        complaint = await self.repository.get(complaint_id)
        if complaint is None:
            raise NotFoundError(f"Complaint {complaint_id} not found")
        return complaint

    @staticmethod
    def _authorize(actor: Actor, action: Action, complaint: Complaint | None = None) -> None:
        decision = can_perform(actor.role, actor.id, action, complaint)
        if decision.allowed:
            return
        if decision.reason is DenyReason.INVALID_STATE_FOR_ACTION and complaint is not None:
            raise InvalidTransitionError(
                complaint.status,
                action,
                f"Cannot {action.value.replace('_', ' ')} a complaint in status '{complaint.status.value}'",
            )
        reason = decision.reason or DenyReason.ROLE_FORBIDDEN
        raise AuthorizationError(
            f"Role '{actor.role.value}' may not {action.value.replace('_', ' ')} this complaint",
            code=reason.value,
        )

    def _reopen_window_closed(self, complaint: Complaint, at: datetime) -> bool:
        if complaint.resolved_at is None:
            return False
        return at > complaint.resolved_at + timedelta(days=self.reopen_window_days)

    def _context(self, actor: Actor, **values: Any) -> TransitionContext:
        return TransitionContext(actor_id=actor.id, actor_role=actor.role.value, at=self.clock(), **values)

    async def _next_ticket_number(self, now: datetime) -> str:
        count = await self.repository.count()
        millis = str(int(now.timestamp() * 1000))[-6:]
        return f"APT-{millis}-{count + 1:04d}"

    @contextmanager
    def _instrument(self, operation: str, **attributes: str) -> Iterator[trace.Span]:
        with tracer.start_as_current_span(f"complaints.{operation}") as span:
            for key, value in attributes.items():
                span.set_attribute(f"complaint.{key}", value)
            if self.metrics is None:
                yield span
                return
            duration = self.metrics.distribution(OPERATION_DURATION)
            outcomes = self.metrics.counter(OPERATIONS_TOTAL)
            with track_duration(duration, labels={"operation": operation}):
                try:
                    yield span
                except ComplaintError as exc:
                    outcomes.inc(labels={"operation": operation, "outcome": exc.code})
                    raise
                except Exception:
                    outcomes.inc(labels={"operation": operation, "outcome": "error"})
                    raise
            outcomes.inc(labels={"operation": operation, "outcome": "success"})
