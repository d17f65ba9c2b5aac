from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Mapping

from .state import TERMINAL_STATUSES, ComplaintStatus


class ComplaintCategory(str, Enum):
    ELECTRICAL = "Electrical"
    PLUMBING = "Plumbing"
    CARPENTRY = "Carpentry"
    PAINTING = "Painting"
    CLEANING = "Cleaning"
    SECURITY = "Security"
    ELEVATOR = "Elevator"
    COMMON_AREA = "Common Area"
    OTHER = "Other"


class ComplaintPriority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    EMERGENCY = "Emergency"


class CommentVisibility(str, Enum):
    """Who may read a comment: everyone on the ticket, or staff and admins only."""

    PUBLIC = "public"
    STAFF = "staff"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


SLA_HOURS: Mapping[ComplaintPriority, int] = {
    ComplaintPriority.EMERGENCY: 2,
    ComplaintPriority.HIGH: 24,
    ComplaintPriority.MEDIUM: 72,
    ComplaintPriority.LOW: 168,
}


def expected_resolution(created_at: datetime, priority: ComplaintPriority) -> datetime:
    return created_at + timedelta(hours=SLA_HOURS[priority])


@dataclass(slots=True)
class MediaRef:
    """Reference to an attachment already stored in object storage."""

    url: str
    public_id: str | None = None
    type: MediaType = MediaType.IMAGE
    uploaded_at: datetime | None = None


@dataclass(slots=True)
class Location:
    specific_location: str | None = None
    access_instructions: str | None = None
    wing: str | None = None
    flat_number: str | None = None
    floor_number: int | None = None


@dataclass(slots=True)
class WorkUpdate:
    author: str
    text: str
    timestamp: datetime
    images: list[MediaRef] = field(default_factory=list)


@dataclass(slots=True)
class Comment:
    author: str
    author_role: str
    text: str
    timestamp: datetime
    visibility: CommentVisibility = CommentVisibility.PUBLIC


@dataclass(slots=True)
class InternalNote:
    author: str
    text: str
    timestamp: datetime


@dataclass(slots=True)
class Rating:
    score: int
    rated_at: datetime
    comment: str | None = None


@dataclass(slots=True)
class PriorityChange:
    old_value: ComplaintPriority
    new_value: ComplaintPriority
    changed_by: str
    timestamp: datetime


@dataclass(slots=True)
class StatusChange:
    """Immutable audit entry written for every status change."""

    from_status: ComplaintStatus | None
    to_status: ComplaintStatus
    event: str
    actor: str
    actor_role: str
    timestamp: datetime
    reason: str | None = None


@dataclass(slots=True)
class SlaInfo:
    """Service level tracking derived from the complaint priority."""

    expected_resolution: datetime | None = None
    in_progress_at: datetime | None = None
    actual_resolution: datetime | None = None
    is_breached: bool = False
    resolution_time_hours: float | None = None

    def mark_resolved(self, *, created_at: datetime, at: datetime) -> None:
        self.actual_resolution = at
        self.is_breached = self.expected_resolution is not None and at > self.expected_resolution
        self.resolution_time_hours = round((at - created_at).total_seconds() / 3600, 1)

    def clear_resolution(self) -> None:
        self.actual_resolution = None
        self.is_breached = False
        self.resolution_time_hours = None


@dataclass(slots=True)
class Complaint:
    """Aggregate representing a resident complaint and its full audit trail."""

    id: str
    ticket_number: str
    title: str
    description: str
    category: ComplaintCategory
    priority: ComplaintPriority
    status: ComplaintStatus
    created_by: str
    created_at: datetime
    updated_at: datetime
    sub_category: str | None = None
    location: Location = field(default_factory=Location)
    media: list[MediaRef] = field(default_factory=list)
    assigned_staff: str | None = None
    assigned_at: datetime | None = None
    assigned_by: str | None = None
    last_assigned_staff: str | None = None
    work_updates: list[WorkUpdate] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    internal_notes: list[InternalNote] = field(default_factory=list)
    admin_media: list[MediaRef] = field(default_factory=list)
    rating: Rating | None = None
    priority_history: list[PriorityChange] = field(default_factory=list)
    status_history: list[StatusChange] = field(default_factory=list)
    sla: SlaInfo = field(default_factory=SlaInfo)
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    reopened_at: datetime | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_owner(self, actor_id: str) -> bool:
        return self.created_by == actor_id

    def is_assigned_to(self, actor_id: str) -> bool:
        return self.assigned_staff is not None and self.assigned_staff == actor_id

    def was_handled_by(self, actor_id: str) -> bool:
        return self.is_assigned_to(actor_id) or self.last_assigned_staff == actor_id

    def record_status_change(
        self,
        *,
        from_status: ComplaintStatus | None,
        to_status: ComplaintStatus,
        event: str,
        actor: str,
        actor_role: str,
        at: datetime,
        reason: str | None = None,
    ) -> None:
        self.status_history.append(
            StatusChange(
                from_status=from_status,
                to_status=to_status,
                event=event,
                actor=actor,
                actor_role=actor_role,
                timestamp=at,
                reason=reason,
            )
        )


@dataclass(slots=True)
class ComplaintFilter:
    """Query options for listing complaints."""

    created_by: str | None = None
    handled_by: str | None = None
    status: ComplaintStatus | None = None
    category: ComplaintCategory | None = None
    priority: ComplaintPriority | None = None


@dataclass(slots=True)
class ComplaintPage:
    items: list[Complaint]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit
