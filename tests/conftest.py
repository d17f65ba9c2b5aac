from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from aptdesk.complaints.models import ComplaintCategory
from aptdesk.complaints.notifications import LifecycleOrchestrator
from aptdesk.complaints.policy import Role
from aptdesk.complaints.repository import InMemoryComplaintRepository
from aptdesk.complaints.service import ComplaintService
from aptdesk.complaints.staff import InMemoryStaffDirectory, StaffMember
from aptdesk.dependencies.auth import User
from aptdesk.metrics import MetricsRegistry


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class RecordingNotifier:
    def __init__(self):
        self.messages: list[tuple[str, str, dict]] = []

    async def emit_to_room(self, room: str, event: str, payload: dict) -> None:
        self.messages.append((room, event, payload))

    def rooms_for(self, event: str) -> list[str]:
        return [room for room, name, _ in self.messages if name == event]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def resident() -> User:
    return User(id="resident-1", role=Role.RESIDENT)


@pytest.fixture
def other_resident() -> User:
    return User(id="resident-2", role=Role.RESIDENT)


@pytest.fixture
def staff() -> User:
    return User(id="staff-1", role=Role.STAFF)


@pytest.fixture
def other_staff() -> User:
    return User(id="staff-2", role=Role.STAFF)


@pytest.fixture
def admin() -> User:
    return User(id="admin-1", role=Role.ADMIN)


@pytest.fixture
def staff_directory(clock: FakeClock) -> InMemoryStaffDirectory:
    return InMemoryStaffDirectory(
        [
            StaffMember(
                id="staff-1",
                name="Ravi",
                created_at=clock.now - timedelta(days=30),
                specializations=(ComplaintCategory.PLUMBING,),
            ),
            StaffMember(
                id="staff-2",
                name="Meera",
                created_at=clock.now - timedelta(days=60),
                specializations=(ComplaintCategory.ELECTRICAL,),
            ),
        ]
    )


@pytest.fixture
def repository() -> InMemoryComplaintRepository:
    return InMemoryComplaintRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def orchestrator(staff_directory, notifier, metrics) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(staff_directory, notifier, metrics=metrics)


@pytest.fixture
def service(repository, orchestrator, clock, metrics) -> ComplaintService:
    return ComplaintService(repository, orchestrator, clock=clock, metrics=metrics)
