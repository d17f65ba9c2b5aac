from __future__ import annotations

import asyncio

import pytest

from aptdesk.complaints.errors import (
    AuthorizationError,
    ConcurrentModificationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from aptdesk.complaints.models import CommentVisibility, ComplaintCategory, ComplaintPriority, MediaRef
from aptdesk.complaints.notifications import LifecycleOrchestrator
from aptdesk.complaints.policy import Action
from aptdesk.complaints.repository import InMemoryComplaintRepository
from aptdesk.complaints.service import ComplaintService
from aptdesk.complaints.state import STAFFED_STATUSES, ComplaintStatus
from aptdesk.metrics.definitions import OPERATIONS_TOTAL, WRITE_CONFLICTS_TOTAL


async def file_complaint(service, actor, **overrides):
    values = dict(
        title="Leaking tap",
        description="Kitchen tap has been dripping since morning",
        category=ComplaintCategory.PLUMBING,
        priority=ComplaintPriority.MEDIUM,
    )
    values.update(overrides)
    return await service.create_complaint(actor, **values)


async def resolved_complaint(service, resident, admin, staff):
    complaint = await file_complaint(service, resident)
    await service.assign(admin, complaint.id, staff_id=staff.id)
    await service.add_work_update(staff, complaint.id, text="fixed leak")
    return await service.update_status(admin, complaint.id, status=ComplaintStatus.RESOLVED)


def assert_staffing_invariant(complaint):
    assert (complaint.assigned_staff is not None) == (complaint.status in STAFFED_STATUSES)


@pytest.mark.asyncio
async def test_full_lifecycle_scenario(service, resident, admin, staff, clock, staff_directory):
    complaint = await file_complaint(service, resident)
    assert complaint.status is ComplaintStatus.OPEN
    assert complaint.ticket_number.startswith("APT-")
    assert complaint.ticket_number.endswith("-0001")
    assert complaint.version == 1

    complaint = await service.assign(admin, complaint.id, staff_id=staff.id)
    assert complaint.status is ComplaintStatus.ASSIGNED
    assert complaint.assigned_staff == staff.id
    assert_staffing_invariant(complaint)
    assert (await staff_directory.get_staff(staff.id)).active_complaints == 1

    clock.advance(hours=3)
    complaint = await service.add_work_update(staff, complaint.id, text="fixed leak")
    assert complaint.status is ComplaintStatus.IN_PROGRESS
    assert complaint.work_updates[-1].text == "fixed leak"

    complaint = await service.update_status(admin, complaint.id, status=ComplaintStatus.RESOLVED)
    assert complaint.status is ComplaintStatus.RESOLVED
    assert complaint.resolved_at == clock.now
    assert complaint.assigned_staff is None
    assert (await staff_directory.get_staff(staff.id)).active_complaints == 0

    complaint = await service.rate(resident, complaint.id, score=5)
    assert complaint.rating.score == 5
    assert complaint.status is ComplaintStatus.RESOLVED

    complaint = await service.close(resident, complaint.id)
    assert complaint.status is ComplaintStatus.CLOSED
    assert complaint.closed_at is not None

    complaint = await service.reopen(resident, complaint.id, reason="Dripping again")
    assert complaint.status is ComplaintStatus.REOPENED
    assert complaint.resolved_at is None
    assert complaint.closed_at is None
    assert complaint.assigned_staff == staff.id
    assert_staffing_invariant(complaint)

    history = [(entry.from_status, entry.to_status) for entry in complaint.status_history]
    assert history == [
        (None, ComplaintStatus.OPEN),
        (ComplaintStatus.OPEN, ComplaintStatus.ASSIGNED),
        (ComplaintStatus.ASSIGNED, ComplaintStatus.IN_PROGRESS),
        (ComplaintStatus.IN_PROGRESS, ComplaintStatus.RESOLVED),
        (ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED),
        (ComplaintStatus.CLOSED, ComplaintStatus.REOPENED),
    ]


@pytest.mark.asyncio
async def test_create_rejects_non_residents(service, admin):
    with pytest.raises(AuthorizationError) as exc_info:
        await file_complaint(service, admin)

    assert exc_info.value.code == "ROLE_FORBIDDEN"


@pytest.mark.asyncio
async def test_create_validates_title_and_description(service, resident):
    with pytest.raises(ValidationError):
        await file_complaint(service, resident, title="   ")
    with pytest.raises(ValidationError):
        await file_complaint(service, resident, description="x" * 501)


@pytest.mark.asyncio
async def test_create_sets_sla_from_priority(service, resident, clock):
    complaint = await file_complaint(service, resident, priority=ComplaintPriority.EMERGENCY)

    assert (complaint.sla.expected_resolution - clock.now).total_seconds() == 2 * 3600


@pytest.mark.asyncio
async def test_active_complaint_limit(service, resident, repository):
    for index in range(5):
        await file_complaint(service, resident, title=f"Issue {index}")

    with pytest.raises(ConflictError):
        await file_complaint(service, resident, title="One too many")

    assert await repository.count() == 5


@pytest.mark.asyncio
async def test_cancelled_complaints_do_not_count_towards_limit(service, resident):
    first = await file_complaint(service, resident)
    await service.cancel(resident, first.id, reason="Fixed it myself")
    for index in range(4):
        await file_complaint(service, resident, title=f"Issue {index}")

    fifth = await file_complaint(service, resident, title="Still allowed")

    assert fifth.ticket_number.endswith("-0006")


@pytest.mark.asyncio
async def test_get_complaint_enforces_visibility(service, resident, other_resident, staff, admin):
    complaint = await file_complaint(service, resident)

    with pytest.raises(AuthorizationError) as exc_info:
        await service.get_complaint(other_resident, complaint.id)
    assert exc_info.value.code == "NOT_OWNER"

    with pytest.raises(AuthorizationError) as exc_info:
        await service.get_complaint(staff, complaint.id)
    assert exc_info.value.code == "NOT_ASSIGNED"

    assert (await service.get_complaint(admin, complaint.id)).id == complaint.id


@pytest.mark.asyncio
async def test_get_unknown_complaint(service, admin):
    with pytest.raises(NotFoundError):
        await service.get_complaint(admin, "missing")


@pytest.mark.asyncio
async def test_resident_view_hides_staff_discussion(service, resident, admin, staff):
    complaint = await file_complaint(service, resident)
    await service.assign(admin, complaint.id, staff_id=staff.id)
    await service.add_comment(staff, complaint.id, text="Need a new washer", visibility=CommentVisibility.STAFF)
    await service.add_comment(staff, complaint.id, text="Coming at 5pm")
    await service.add_internal_note(admin, complaint.id, text="Resident is a repeat caller")

    resident_view = await service.get_complaint(resident, complaint.id)
    admin_view = await service.get_complaint(admin, complaint.id)

    assert [comment.text for comment in resident_view.comments] == ["Coming at 5pm"]
    assert resident_view.internal_notes == []
    assert len(admin_view.comments) == 2
    assert len(admin_view.internal_notes) == 1


@pytest.mark.asyncio
async def test_resident_cannot_post_staff_only_comment(service, resident):
    complaint = await file_complaint(service, resident)

    with pytest.raises(AuthorizationError):
        await service.add_comment(resident, complaint.id, text="hello", visibility=CommentVisibility.STAFF)


@pytest.mark.asyncio
async def test_list_is_scoped_by_role(service, resident, other_resident, admin, staff):
    mine = await file_complaint(service, resident)
    theirs = await file_complaint(service, other_resident, category=ComplaintCategory.ELECTRICAL)
    await service.assign(admin, theirs.id, staff_id=staff.id)

    resident_page = await service.list_complaints(resident)
    staff_page = await service.list_complaints(staff)
    admin_page = await service.list_complaints(admin, category=ComplaintCategory.ELECTRICAL)

    assert [item.id for item in resident_page.items] == [mine.id]
    assert [item.id for item in staff_page.items] == [theirs.id]
    assert [item.id for item in admin_page.items] == [theirs.id]
    assert admin_page.pages == 1


@pytest.mark.asyncio
async def test_list_validates_paging(service, admin):
    with pytest.raises(ValidationError):
        await service.list_complaints(admin, page=0)
    with pytest.raises(ValidationError):
        await service.list_complaints(admin, limit=500)


@pytest.mark.asyncio
async def test_assign_auto_selects_specialist(service, resident, admin, staff_directory):
    complaint = await file_complaint(service, resident, category=ComplaintCategory.ELECTRICAL)

    assigned = await service.assign(admin, complaint.id)

    assert assigned.assigned_staff == "staff-2"
    assert (await staff_directory.get_staff("staff-2")).active_complaints == 1


@pytest.mark.asyncio
async def test_assign_falls_back_to_least_loaded_staff(service, resident, admin):
    complaint = await file_complaint(service, resident, category=ComplaintCategory.PAINTING)

    assigned = await service.assign(admin, complaint.id)

    # No painter on the roster: oldest of the equally idle staff wins.
    assert assigned.assigned_staff == "staff-2"


@pytest.mark.asyncio
async def test_assign_unknown_staff(service, resident, admin):
    complaint = await file_complaint(service, resident)

    with pytest.raises(NotFoundError):
        await service.assign(admin, complaint.id, staff_id="ghost")

    assert (await service.get_complaint(admin, complaint.id)).status is ComplaintStatus.OPEN


@pytest.mark.asyncio
async def test_assign_unavailable_staff(service, resident, admin, staff_directory):
    (await staff_directory.get_staff("staff-1")).is_active = False
    complaint = await file_complaint(service, resident)

    with pytest.raises(ValidationError):
        await service.assign(admin, complaint.id, staff_id="staff-1")


@pytest.mark.asyncio
async def test_assign_twice_is_invalid_transition(service, resident, admin, staff):
    complaint = await file_complaint(service, resident)
    await service.assign(admin, complaint.id, staff_id=staff.id)

    with pytest.raises(InvalidTransitionError):
        await service.assign(admin, complaint.id, staff_id="staff-2")


@pytest.mark.asyncio
async def test_non_admin_cannot_assign(service, resident, staff):
    complaint = await file_complaint(service, resident)

    with pytest.raises(AuthorizationError):
        await service.assign(staff, complaint.id, staff_id=staff.id)


@pytest.mark.asyncio
async def test_work_update_requires_assignment(service, resident, admin, staff, other_staff):
    complaint = await file_complaint(service, resident)
    await service.assign(admin, complaint.id, staff_id=staff.id)

    with pytest.raises(AuthorizationError) as exc_info:
        await service.add_work_update(other_staff, complaint.id, text="not mine")

    assert exc_info.value.code == "NOT_ASSIGNED"


@pytest.mark.asyncio
async def test_update_status_mapping(service, resident, admin, staff):
    complaint = await file_complaint(service, resident)
    await service.assign(admin, complaint.id, staff_id=staff.id)

    with pytest.raises(ValidationError):
        await service.update_status(admin, complaint.id, status=ComplaintStatus.ASSIGNED)
    with pytest.raises(InvalidTransitionError):
        await service.update_status(admin, complaint.id, status=ComplaintStatus.OPEN)

    started = await service.update_status(admin, complaint.id, status=ComplaintStatus.IN_PROGRESS)
    assert started.status is ComplaintStatus.IN_PROGRESS
    assert started.sla.in_progress_at is not None


@pytest.mark.asyncio
async def test_cancel_resolved_complaint_fails(service, resident, admin, staff):
    complaint = await resolved_complaint(service, resident, admin, staff)

    with pytest.raises(InvalidTransitionError):
        await service.cancel(admin, complaint.id, reason="oops")
    with pytest.raises(InvalidTransitionError):
        await service.cancel(resident, complaint.id)

    assert (await service.get_complaint(admin, complaint.id)).status is ComplaintStatus.RESOLVED


@pytest.mark.asyncio
async def test_admin_cancel_releases_workload(service, resident, admin, staff, staff_directory):
    complaint = await file_complaint(service, resident)
    await service.assign(admin, complaint.id, staff_id=staff.id)

    cancelled = await service.cancel(admin, complaint.id, reason="Duplicate")

    assert cancelled.status is ComplaintStatus.CANCELLED
    assert cancelled.cancellation_reason == "Duplicate"
    assert_staffing_invariant(cancelled)
    assert (await staff_directory.get_staff(staff.id)).active_complaints == 0


@pytest.mark.asyncio
async def test_second_rating_is_rejected(service, resident, admin, staff):
    complaint = await resolved_complaint(service, resident, admin, staff)
    await service.rate(resident, complaint.id, score=4, comment="Quick fix")

    with pytest.raises(ConflictError):
        await service.rate(resident, complaint.id, score=1)

    stored = await service.get_complaint(resident, complaint.id)
    assert stored.rating.score == 4
    assert stored.rating.comment == "Quick fix"


@pytest.mark.asyncio
async def test_rating_open_complaint_is_invalid_transition(service, resident):
    complaint = await file_complaint(service, resident)

    with pytest.raises(InvalidTransitionError):
        await service.rate(resident, complaint.id, score=5)


@pytest.mark.asyncio
async def test_reopen_window_expires(service, resident, admin, staff, clock):
    complaint = await resolved_complaint(service, resident, admin, staff)
    clock.advance(days=8)

    with pytest.raises(InvalidTransitionError):
        await service.reopen(resident, complaint.id)

    assert (await service.get_complaint(resident, complaint.id)).status is ComplaintStatus.RESOLVED


@pytest.mark.asyncio
async def test_reopened_complaint_can_be_reassigned(service, resident, admin, staff, staff_directory):
    complaint = await resolved_complaint(service, resident, admin, staff)
    await service.reopen(resident, complaint.id)

    reassigned = await service.assign(admin, complaint.id, staff_id="staff-2")

    assert reassigned.status is ComplaintStatus.ASSIGNED
    assert reassigned.assigned_staff == "staff-2"
    assert (await staff_directory.get_staff("staff-2")).active_complaints == 1


@pytest.mark.asyncio
async def test_priority_update_appends_history_and_recomputes_sla(service, resident, admin, clock):
    complaint = await file_complaint(service, resident)

    updated = await service.update_priority(admin, complaint.id, priority=ComplaintPriority.HIGH)

    assert updated.priority is ComplaintPriority.HIGH
    assert [(change.old_value, change.new_value) for change in updated.priority_history] == [
        (ComplaintPriority.MEDIUM, ComplaintPriority.HIGH)
    ]
    assert (updated.sla.expected_resolution - updated.created_at).total_seconds() == 24 * 3600

    with pytest.raises(ValidationError):
        await service.update_priority(admin, complaint.id, priority=ComplaintPriority.HIGH)


@pytest.mark.asyncio
async def test_priority_frozen_for_terminal_complaints(service, resident, admin):
    complaint = await file_complaint(service, resident)
    await service.cancel(resident, complaint.id)

    with pytest.raises(InvalidTransitionError):
        await service.update_priority(admin, complaint.id, priority=ComplaintPriority.LOW)


@pytest.mark.asyncio
async def test_audit_lists_only_grow(service, resident, admin, staff):
    complaint = await file_complaint(service, resident)
    await service.assign(admin, complaint.id, staff_id=staff.id)

    sizes = []
    for step in range(3):
        await service.add_work_update(staff, complaint.id, text=f"step {step}")
        await service.add_comment(resident, complaint.id, text=f"thanks {step}")
        current = await service.get_complaint(admin, complaint.id)
        sizes.append((len(current.work_updates), len(current.comments)))

    assert sizes == [(1, 1), (2, 2), (3, 3)]
    assert [update.text for update in current.work_updates] == ["step 0", "step 1", "step 2"]


@pytest.mark.asyncio
async def test_admin_media_is_appended(service, resident, admin):
    complaint = await file_complaint(service, resident)

    updated = await service.add_admin_media(
        admin, complaint.id, media=[MediaRef(url="https://cdn.example/inspection.jpg", public_id="inspection")]
    )

    assert [item.public_id for item in updated.admin_media] == ["inspection"]
    assert updated.admin_media[0].uploaded_at is not None

    with pytest.raises(ValidationError):
        await service.add_admin_media(admin, complaint.id, media=[])


@pytest.mark.asyncio
async def test_allowed_actions_for_assigned_staff(service, resident, admin, staff):
    complaint = await file_complaint(service, resident)
    await service.assign(admin, complaint.id, staff_id=staff.id)

    actions = await service.allowed_actions(staff, complaint.id)

    assert actions == [Action.VIEW, Action.ADD_WORK_UPDATE, Action.ADD_COMMENT]


@pytest.mark.asyncio
async def test_allowed_actions_for_staff_on_reopened_complaint(service, resident, admin, staff):
    complaint = await resolved_complaint(service, resident, admin, staff)
    await service.reopen(resident, complaint.id)

    actions = await service.allowed_actions(staff, complaint.id)

    assert actions == [Action.VIEW, Action.ADD_COMMENT]
    with pytest.raises(InvalidTransitionError):
        await service.add_work_update(staff, complaint.id, text="back on site")


@pytest.mark.asyncio
async def test_allowed_actions_for_admin_on_in_progress_complaint(service, resident, admin, staff):
    complaint = await file_complaint(service, resident)
    await service.assign(admin, complaint.id, staff_id=staff.id)
    await service.add_work_update(staff, complaint.id, text="parts ordered")

    actions = await service.allowed_actions(admin, complaint.id)

    assert actions == [
        Action.VIEW,
        Action.UPDATE_STATUS,
        Action.CANCEL,
        Action.ADD_COMMENT,
        Action.ADD_ADMIN_MEDIA,
        Action.ADD_INTERNAL_NOTE,
        Action.UPDATE_PRIORITY,
    ]
    with pytest.raises(InvalidTransitionError):
        await service.assign(admin, complaint.id, staff_id=staff.id)
    with pytest.raises(InvalidTransitionError):
        await service.close(admin, complaint.id)


@pytest.mark.asyncio
async def test_allowed_actions_track_rating_and_reopen_window(service, resident, admin, staff, clock):
    complaint = await resolved_complaint(service, resident, admin, staff)
    assert await service.allowed_actions(resident, complaint.id) == [
        Action.VIEW,
        Action.RATE,
        Action.REOPEN,
        Action.CLOSE,
        Action.ADD_COMMENT,
    ]

    await service.rate(resident, complaint.id, score=4)
    clock.advance(days=8)

    assert await service.allowed_actions(resident, complaint.id) == [Action.VIEW, Action.CLOSE, Action.ADD_COMMENT]


@pytest.mark.asyncio
async def test_notifications_reach_owner_staff_and_admin(service, resident, admin, staff, notifier):
    complaint = await file_complaint(service, resident)
    await service.assign(admin, complaint.id, staff_id=staff.id)

    assert notifier.rooms_for("ticket_created") == ["user_resident-1", "admin"]
    assert notifier.rooms_for("ticket_assigned") == ["user_resident-1", "user_staff-1", "admin"]
    payload = notifier.messages[-1][2]
    assert payload["from_state"] == "Open"
    assert payload["to_state"] == "Assigned"
    assert payload["actor_id"] == admin.id


@pytest.mark.asyncio
async def test_internal_notes_are_not_pushed_to_residents(service, resident, admin, staff, notifier):
    complaint = await file_complaint(service, resident)
    await service.assign(admin, complaint.id, staff_id=staff.id)

    await service.add_internal_note(admin, complaint.id, text="Check warranty")

    assert notifier.rooms_for("internal_note_added") == ["user_staff-1", "admin"]


@pytest.mark.asyncio
async def test_notification_failure_does_not_roll_back(repository, staff_directory, clock, resident, admin, staff):
    class BrokenNotifier:
        async def emit_to_room(self, room, event, payload):
            raise ConnectionError("socket gone")

    service = ComplaintService(
        repository, LifecycleOrchestrator(staff_directory, BrokenNotifier()), clock=clock
    )
    complaint = await file_complaint(service, resident)

    assigned = await service.assign(admin, complaint.id, staff_id=staff.id)

    assert assigned.status is ComplaintStatus.ASSIGNED
    assert (await repository.get(complaint.id)).status is ComplaintStatus.ASSIGNED


class InterleavingRepository(InMemoryComplaintRepository):
    """Yield to the event loop after every read so concurrent writers both see the same version."""

    async def get(self, complaint_id):
        complaint = await super().get(complaint_id)
        await asyncio.sleep(0)
        return complaint


@pytest.mark.asyncio
async def test_concurrent_assign_has_one_winner(staff_directory, notifier, clock, metrics, resident, admin):
    repository = InterleavingRepository()
    service = ComplaintService(
        repository, LifecycleOrchestrator(staff_directory, notifier), clock=clock, metrics=metrics
    )
    complaint = await file_complaint(service, resident)

    results = await asyncio.gather(
        service.assign(admin, complaint.id, staff_id="staff-1"),
        service.assign(admin, complaint.id, staff_id="staff-2"),
        return_exceptions=True,
    )

    winners = [result for result in results if not isinstance(result, Exception)]
    failures = [result for result in results if isinstance(result, Exception)]
    assert len(winners) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidTransitionError)
    stored = await repository.get(complaint.id)
    assert stored.assigned_staff == winners[0].assigned_staff
    assert stored.version == 2
    assert metrics.counter(WRITE_CONFLICTS_TOTAL).value(labels={"operation": "assign"}) == 1


@pytest.mark.asyncio
async def test_concurrent_assign_without_retries_surfaces_conflict(staff_directory, notifier, clock, resident, admin):
    repository = InterleavingRepository()
    service = ComplaintService(
        repository, LifecycleOrchestrator(staff_directory, notifier), clock=clock, max_write_attempts=1
    )
    complaint = await file_complaint(service, resident)

    results = await asyncio.gather(
        service.assign(admin, complaint.id, staff_id="staff-1"),
        service.assign(admin, complaint.id, staff_id="staff-2"),
        return_exceptions=True,
    )

    assert sum(isinstance(result, ConcurrentModificationError) for result in results) == 1
    assert (await repository.get(complaint.id)).status is ComplaintStatus.ASSIGNED


@pytest.mark.asyncio
async def test_operation_outcomes_are_counted(service, resident, metrics):
    await file_complaint(service, resident)
    with pytest.raises(NotFoundError):
        await service.get_complaint(resident, "missing")

    counter = metrics.counter(OPERATIONS_TOTAL)
    assert counter.value(labels={"operation": "create_complaint", "outcome": "success"}) == 1
    assert counter.value(labels={"operation": "get_complaint", "outcome": "NOT_FOUND"}) == 1
