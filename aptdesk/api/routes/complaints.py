from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, ConfigDict, Field

from aptdesk.complaints.models import (
    CommentVisibility,
    Complaint,
    ComplaintCategory,
    ComplaintPage,
    ComplaintPriority,
    Location,
    MediaRef,
    MediaType,
)
from aptdesk.complaints.policy import Action
from aptdesk.complaints.state import ComplaintStateMachine, ComplaintStatus
from aptdesk.dependencies.auth import CurrentUser
from aptdesk.dependencies.complaints import AdminUser, ComplaintServiceDep, ResidentUser

router = APIRouter(prefix="/complaints", tags=["complaints"])


class MediaRefPayload(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    url: str = Field(..., min_length=1)
    public_id: str | None = None
    type: MediaType = MediaType.IMAGE
    uploaded_at: datetime | None = None

    def to_entity(self) -> MediaRef:
        return MediaRef(url=self.url, public_id=self.public_id, type=self.type, uploaded_at=self.uploaded_at)


class LocationPayload(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    specific_location: str | None = Field(default=None, max_length=200)
    access_instructions: str | None = Field(default=None, max_length=300)
    wing: str | None = None
    flat_number: str | None = None
    floor_number: int | None = None

    def to_entity(self) -> Location:
        return Location(**self.model_dump())


class ComplaintCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    category: ComplaintCategory
    priority: ComplaintPriority = ComplaintPriority.MEDIUM
    sub_category: str | None = Field(default=None, max_length=100)
    location: LocationPayload | None = None
    media: list[MediaRefPayload] = Field(default_factory=list)


class AssignRequest(BaseModel):
    staff_id: str | None = None
    note: str | None = Field(default=None, max_length=500)


class WorkUpdateRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=1000)
    images: list[MediaRefPayload] = Field(default_factory=list)


class StatusUpdateRequest(BaseModel):
    status: ComplaintStatus
    reason: str | None = Field(default=None, max_length=500)


class RateRequest(BaseModel):
    score: int = Field(..., ge=1, le=5)
    comment: str | None = Field(default=None, max_length=500)


class ReasonRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class CommentRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=1000)
    visibility: CommentVisibility = CommentVisibility.PUBLIC


class AdminMediaRequest(BaseModel):
    media_refs: list[MediaRefPayload] = Field(..., min_length=1)


class InternalNoteRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=1000)


class PriorityRequest(BaseModel):
    priority: ComplaintPriority


class WorkUpdateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    author: str
    text: str
    timestamp: datetime
    images: list[MediaRefPayload]


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    author: str
    author_role: str
    text: str
    timestamp: datetime
    visibility: CommentVisibility


class InternalNoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    author: str
    text: str
    timestamp: datetime


class RatingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    score: int
    comment: str | None
    rated_at: datetime


class PriorityChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    old_value: ComplaintPriority
    new_value: ComplaintPriority
    changed_by: str
    timestamp: datetime


class StatusChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: ComplaintStatus | None
    to_status: ComplaintStatus
    event: str
    actor: str
    actor_role: str
    reason: str | None
    timestamp: datetime


class SlaResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    expected_resolution: datetime | None
    in_progress_at: datetime | None
    actual_resolution: datetime | None
    is_breached: bool
    resolution_time_hours: float | None


class ComplaintResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_number: str
    title: str
    description: str
    category: ComplaintCategory
    sub_category: str | None
    priority: ComplaintPriority
    status: ComplaintStatus
    created_by: str
    location: LocationPayload
    media: list[MediaRefPayload]
    assigned_staff: str | None
    assigned_at: datetime | None
    assigned_by: str | None
    last_assigned_staff: str | None
    work_updates: list[WorkUpdateResponse]
    comments: list[CommentResponse]
    internal_notes: list[InternalNoteResponse]
    admin_media: list[MediaRefPayload]
    rating: RatingResponse | None
    priority_history: list[PriorityChangeResponse]
    status_history: list[StatusChangeResponse]
    sla: SlaResponse
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None
    closed_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    reopened_at: datetime | None
    version: int

    @classmethod
    def from_entity(cls, complaint: Complaint) -> "ComplaintResponse":
        return cls.model_validate(complaint, from_attributes=True)


class ComplaintEnvelope(BaseModel):
    success: bool = True
    message: str
    data: ComplaintResponse


class ComplaintPageData(BaseModel):
    items: list[ComplaintResponse]
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def from_page(cls, page: ComplaintPage) -> "ComplaintPageData":
        return cls(
            items=[ComplaintResponse.from_entity(item) for item in page.items],
            total=page.total,
            page=page.page,
            limit=page.limit,
            pages=page.pages,
        )


class ComplaintPageEnvelope(BaseModel):
    success: bool = True
    message: str
    data: ComplaintPageData


class AllowedActionsData(BaseModel):
    status: ComplaintStatus
    actions: list[Action]
    allowed_statuses: list[ComplaintStatus]


class AllowedActionsEnvelope(BaseModel):
    success: bool = True
    message: str
    data: AllowedActionsData


def _wrap(complaint: Complaint, message: str) -> ComplaintEnvelope:
    return ComplaintEnvelope(message=message, data=ComplaintResponse.from_entity(complaint))


@router.post("", response_model=ComplaintEnvelope, status_code=status.HTTP_201_CREATED)
async def create_complaint(
    payload: ComplaintCreateRequest,
    service: ComplaintServiceDep,
    user: ResidentUser,
) -> ComplaintEnvelope:
    complaint = await service.create_complaint(
        user,
        title=payload.title,
        description=payload.description,
        category=payload.category,
        priority=payload.priority,
        sub_category=payload.sub_category,
        location=payload.location.to_entity() if payload.location else None,
        media=[item.to_entity() for item in payload.media],
    )
    return _wrap(complaint, "Complaint created successfully")


@router.get("", response_model=ComplaintPageEnvelope)
async def list_complaints(
    service: ComplaintServiceDep,
    user: CurrentUser,
    status_filter: ComplaintStatus | None = Query(default=None, alias="status"),
    category: ComplaintCategory | None = Query(default=None),
    priority: ComplaintPriority | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> ComplaintPageEnvelope:
    result = await service.list_complaints(
        user, status=status_filter, category=category, priority=priority, page=page, limit=limit
    )
    return ComplaintPageEnvelope(message="Complaints retrieved", data=ComplaintPageData.from_page(result))


@router.get("/{complaint_id}", response_model=ComplaintEnvelope)
async def get_complaint(complaint_id: str, service: ComplaintServiceDep, user: CurrentUser) -> ComplaintEnvelope:
    complaint = await service.get_complaint(user, complaint_id)
    return _wrap(complaint, "Complaint retrieved")


@router.get("/{complaint_id}/allowed-actions", response_model=AllowedActionsEnvelope)
async def get_allowed_actions(
    complaint_id: str, service: ComplaintServiceDep, user: CurrentUser
) -> AllowedActionsEnvelope:
    complaint = await service.get_complaint(user, complaint_id)
    actions = await service.allowed_actions(user, complaint_id)
    statuses: list[ComplaintStatus] = []
    if Action.UPDATE_STATUS in actions:
        statuses = [
            target
            for target in ComplaintStateMachine.reachable_statuses(complaint.status)
            if target is not ComplaintStatus.ASSIGNED
        ]
    return AllowedActionsEnvelope(
        message="Allowed actions retrieved",
        data=AllowedActionsData(status=complaint.status, actions=actions, allowed_statuses=statuses),
    )


@router.post("/{complaint_id}/assign", response_model=ComplaintEnvelope)
async def assign_complaint(
    complaint_id: str, payload: AssignRequest, service: ComplaintServiceDep, user: AdminUser
) -> ComplaintEnvelope:
    complaint = await service.assign(user, complaint_id, staff_id=payload.staff_id, note=payload.note)
    return _wrap(complaint, "Complaint assigned successfully")


@router.post("/{complaint_id}/work-updates", response_model=ComplaintEnvelope)
async def add_work_update(
    complaint_id: str, payload: WorkUpdateRequest, service: ComplaintServiceDep, user: CurrentUser
) -> ComplaintEnvelope:
    complaint = await service.add_work_update(
        user, complaint_id, text=payload.text, images=[item.to_entity() for item in payload.images]
    )
    return _wrap(complaint, "Work update added successfully")


@router.put("/{complaint_id}/status", response_model=ComplaintEnvelope)
async def update_status(
    complaint_id: str, payload: StatusUpdateRequest, service: ComplaintServiceDep, user: AdminUser
) -> ComplaintEnvelope:
    complaint = await service.update_status(user, complaint_id, status=payload.status, reason=payload.reason)
    return _wrap(complaint, f"Complaint status updated to {complaint.status.value}")


@router.post("/{complaint_id}/rate", response_model=ComplaintEnvelope)
async def rate_complaint(
    complaint_id: str, payload: RateRequest, service: ComplaintServiceDep, user: CurrentUser
) -> ComplaintEnvelope:
    complaint = await service.rate(user, complaint_id, score=payload.score, comment=payload.comment)
    return _wrap(complaint, "Thank you for your feedback")


@router.post("/{complaint_id}/reopen", response_model=ComplaintEnvelope)
async def reopen_complaint(
    complaint_id: str, service: ComplaintServiceDep, user: CurrentUser, payload: ReasonRequest | None = None
) -> ComplaintEnvelope:
    complaint = await service.reopen(user, complaint_id, reason=payload.reason if payload else None)
    return _wrap(complaint, "Complaint reopened")


@router.post("/{complaint_id}/close", response_model=ComplaintEnvelope)
async def close_complaint(
    complaint_id: str, service: ComplaintServiceDep, user: CurrentUser, payload: ReasonRequest | None = None
) -> ComplaintEnvelope:
    complaint = await service.close(user, complaint_id, reason=payload.reason if payload else None)
    return _wrap(complaint, "Complaint closed")


@router.post("/{complaint_id}/cancel", response_model=ComplaintEnvelope)
async def cancel_complaint(
    complaint_id: str, service: ComplaintServiceDep, user: CurrentUser, payload: ReasonRequest | None = None
) -> ComplaintEnvelope:
    complaint = await service.cancel(user, complaint_id, reason=payload.reason if payload else None)
    return _wrap(complaint, "Complaint cancelled")


@router.post("/{complaint_id}/comments", response_model=ComplaintEnvelope, status_code=status.HTTP_201_CREATED)
async def add_comment(
    complaint_id: str, payload: CommentRequest, service: ComplaintServiceDep, user: CurrentUser
) -> ComplaintEnvelope:
    complaint = await service.add_comment(user, complaint_id, text=payload.text, visibility=payload.visibility)
    return _wrap(complaint, "Comment added")


@router.post("/{complaint_id}/admin-media", response_model=ComplaintEnvelope, status_code=status.HTTP_201_CREATED)
async def add_admin_media(
    complaint_id: str, payload: AdminMediaRequest, service: ComplaintServiceDep, user: AdminUser
) -> ComplaintEnvelope:
    complaint = await service.add_admin_media(
        user, complaint_id, media=[item.to_entity() for item in payload.media_refs]
    )
    return _wrap(complaint, "Media added")


@router.post(
    "/{complaint_id}/internal-notes", response_model=ComplaintEnvelope, status_code=status.HTTP_201_CREATED
)
async def add_internal_note(
    complaint_id: str, payload: InternalNoteRequest, service: ComplaintServiceDep, user: AdminUser
) -> ComplaintEnvelope:
    complaint = await service.add_internal_note(user, complaint_id, text=payload.text)
    return _wrap(complaint, "Internal note added")


@router.put("/{complaint_id}/priority", response_model=ComplaintEnvelope)
async def update_priority(
    complaint_id: str, payload: PriorityRequest, service: ComplaintServiceDep, user: AdminUser
) -> ComplaintEnvelope:
    complaint = await service.update_priority(user, complaint_id, priority=payload.priority)
    return _wrap(complaint, f"Priority updated to {complaint.priority.value}")
