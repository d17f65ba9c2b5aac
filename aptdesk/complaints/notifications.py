"""Staff selection, workload bookkeeping and real-time fan-out after complaint mutations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from aptdesk.metrics import MetricsRegistry, register_default_metrics
from aptdesk.metrics.definitions import NOTIFICATION_FAILURES_TOTAL, WORKLOAD_FAILURES_TOTAL

from .errors import NotFoundError, ValidationError
from .models import Complaint, ComplaintCategory
from .staff import StaffDirectory, StaffMember
from .state import ACTIVE_STATUSES, ComplaintStatus

logger = logging.getLogger(__name__)

ADMIN_ROOM = "admin"

TICKET_CREATED = "ticket_created"
TICKET_ASSIGNED = "ticket_assigned"
TICKET_STATUS_UPDATED = "ticket_status_updated"
WORK_UPDATE_ADDED = "work_update_added"
TICKET_RESOLVED = "ticket_resolved"
TICKET_CLOSED = "ticket_closed"
TICKET_CANCELLED = "ticket_cancelled"
TICKET_REOPENED = "ticket_reopened"
TICKET_RATED = "ticket_rated"
TICKET_COMMENT_ADDED = "ticket_comment_added"
ADMIN_MEDIA_ADDED = "admin_media_added"
INTERNAL_NOTE_ADDED = "internal_note_added"
TICKET_PRIORITY_UPDATED = "ticket_priority_updated"


def user_room(user_id: str) -> str:
    return f"user_{user_id}"


class Audience(str, Enum):
    """Who should hear about a change."""

    EVERYONE = "everyone"
    STAFF_ONLY = "staff_only"


@dataclass(frozen=True, slots=True)
class DomainEvent:
    ticket_id: str
    ticket_number: str
    event: str
    actor_id: str
    from_state: ComplaintStatus | None
    to_state: ComplaintStatus
    timestamp: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "ticket_number": self.ticket_number,
            "event": self.event,
            "actor_id": self.actor_id,
            "from_state": self.from_state.value if self.from_state is not None else None,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
        }


class RealtimeNotifier(Protocol):
    async def emit_to_room(self, room: str, event: str, payload: dict[str, Any]) -> None:
        ...


def _workload_holder(status: ComplaintStatus | None, staff_id: str | None) -> str | None:
    if status in ACTIVE_STATUSES:
        return staff_id
    return None


class LifecycleOrchestrator:
    """Apply the side effects that follow a successful complaint save.

    Nothing here is allowed to undo a persisted mutation: workload and
    notification failures are logged and counted, then dropped.
    """

    def __init__(
        self,
        staff_directory: StaffDirectory,
        notifier: RealtimeNotifier,
        *,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._staff = staff_directory
        self._notifier = notifier
        self._metrics = register_default_metrics(metrics) if metrics is not None else None

    async def select_staff(self, staff_id: str | None, category: ComplaintCategory) -> StaffMember:
        if staff_id:
            member = await self._staff.get_staff(staff_id)
            if member is None:
                raise NotFoundError(f"Staff member {staff_id} not found")
            if not member.is_available():
                raise ValidationError(f"Staff member {staff_id} is not available for assignment")
            return member

        member = await self._staff.find_least_loaded(category)
        if member is None:
            raise NotFoundError("No available staff found for assignment")
        logger.info(
            "Auto-selected staff for assignment",
            extra={"staff_id": member.id, "category": category.value, "workload": member.active_complaints},
        )
        return member

    async def after_mutation(
        self,
        *,
        before_status: ComplaintStatus | None,
        before_staff: str | None,
        complaint: Complaint,
        channel: str,
        actor_id: str,
        audience: Audience = Audience.EVERYONE,
    ) -> DomainEvent:
        await self._update_workload(before_status, before_staff, complaint)
        if complaint.status is ComplaintStatus.REOPENED and before_status is not ComplaintStatus.REOPENED:
            await self._check_restored_assignee(complaint)
        event = DomainEvent(
            ticket_id=complaint.id,
            ticket_number=complaint.ticket_number,
            event=channel,
            actor_id=actor_id,
            from_state=before_status,
            to_state=complaint.status,
            timestamp=complaint.updated_at,
        )
        await self._publish(event, self._rooms(complaint, before_staff, audience))
        return event

    async def _update_workload(
        self, before_status: ComplaintStatus | None, before_staff: str | None, complaint: Complaint
    ) -> None:
        previous = _workload_holder(before_status, before_staff)
        current = _workload_holder(complaint.status, complaint.assigned_staff)
        if previous == current:
            return
        changes = [(staff_id, delta) for staff_id, delta in ((previous, -1), (current, 1)) if staff_id]
        for staff_id, delta in changes:
            try:
                await self._staff.adjust_workload(staff_id, delta)
            except Exception:
                logger.exception(
                    "Failed to adjust staff workload",
                    extra={"staff_id": staff_id, "delta": delta, "ticket_id": complaint.id},
                )
                if self._metrics is not None:
                    self._metrics.counter(WORKLOAD_FAILURES_TOTAL).inc()

    async def _check_restored_assignee(self, complaint: Complaint) -> None:
        """Warn when reopen hands the complaint back to a staff member who is gone or deactivated."""

        staff_id = complaint.assigned_staff
        if not staff_id:
            return
        try:
            member = await self._staff.get_staff(staff_id)
        except Exception:
            logger.exception(
                "Failed to look up restored assignee", extra={"staff_id": staff_id, "ticket_id": complaint.id}
            )
            return
        if member is not None and member.is_active:
            return
        logger.warning(
            "Reopened complaint returned to inactive staff member; reassignment required",
            extra={"staff_id": staff_id, "ticket_id": complaint.id},
        )

    @staticmethod
    def _rooms(complaint: Complaint, before_staff: str | None, audience: Audience) -> list[str]:
        rooms: list[str] = []
        if audience is Audience.EVERYONE:
            rooms.append(user_room(complaint.created_by))
        for staff_id in (complaint.assigned_staff, before_staff):
            if staff_id and user_room(staff_id) not in rooms:
                rooms.append(user_room(staff_id))
        rooms.append(ADMIN_ROOM)
        return rooms

    async def _publish(self, event: DomainEvent, rooms: list[str]) -> None:
        payload = event.to_payload()
        for room in rooms:
            try:
                await self._notifier.emit_to_room(room, event.event, payload)
            except Exception:
                logger.warning(
                    "Failed to deliver complaint notification",
                    exc_info=True,
                    extra={"room": room, "event": event.event, "ticket_id": event.ticket_id},
                )
                if self._metrics is not None:
                    self._metrics.counter(NOTIFICATION_FAILURES_TOTAL, label_names=("event",)).inc(
                        labels={"event": event.event}
                    )
