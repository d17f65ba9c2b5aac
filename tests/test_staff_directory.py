from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from aptdesk.complaints.models import ComplaintCategory
from aptdesk.complaints.staff import (
    InMemoryStaffDirectory,
    PostgresStaffDirectory,
    StaffAvailability,
    StaffMember,
)

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


class DummyAcquire:
    def __init__(self, connection):
        self._connection = connection

    async def __aenter__(self):
        return self._connection

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyPool:
    def __init__(self, connection):
        self._connection = connection

    def acquire(self):
        return DummyAcquire(self._connection)


def member(staff_id: str, *, age_days: int, load: int = 0, **overrides) -> StaffMember:
    return StaffMember(
        id=staff_id,
        name=staff_id.title(),
        created_at=NOW - timedelta(days=age_days),
        active_complaints=load,
        **overrides,
    )


def test_availability_requires_active_free_and_below_capacity():
    assert member("a", age_days=1).is_available()
    assert not member("b", age_days=1, is_active=False).is_available()
    assert not member("c", age_days=1, availability=StaffAvailability.ON_BREAK).is_available()
    assert not member("d", age_days=1, load=10).is_available()


@pytest.mark.asyncio
async def test_least_loaded_prefers_specialists():
    directory = InMemoryStaffDirectory(
        [
            member("generalist", age_days=90),
            member("plumber", age_days=10, load=3, specializations=(ComplaintCategory.PLUMBING,)),
        ]
    )

    chosen = await directory.find_least_loaded(ComplaintCategory.PLUMBING)

    assert chosen.id == "plumber"


@pytest.mark.asyncio
async def test_least_loaded_breaks_ties_by_seniority():
    directory = InMemoryStaffDirectory([member("newer", age_days=5), member("older", age_days=50)])

    assert (await directory.find_least_loaded()).id == "older"


@pytest.mark.asyncio
async def test_least_loaded_returns_none_when_everyone_is_busy():
    directory = InMemoryStaffDirectory([member("busy", age_days=1, availability=StaffAvailability.BUSY)])

    assert await directory.find_least_loaded(ComplaintCategory.CLEANING) is None


@pytest.mark.asyncio
async def test_adjust_workload_never_goes_negative():
    directory = InMemoryStaffDirectory([member("a", age_days=1)])

    await directory.adjust_workload("a", -1)
    await directory.adjust_workload("a", 1)

    assert (await directory.get_staff("a")).active_complaints == 1


@pytest.mark.asyncio
async def test_postgres_least_loaded_falls_back_to_any_category():
    row = {
        "id": "staff-9",
        "name": "Sam",
        "is_active": True,
        "availability": "Available",
        "active_complaints": 2,
        "max_capacity": 10,
        "specializations": ["Cleaning"],
        "created_at": NOW.replace(tzinfo=None),
    }
    connection = AsyncMock()
    connection.fetchrow = AsyncMock(side_effect=[None, row])
    directory = PostgresStaffDirectory(DummyPool(connection))

    chosen = await directory.find_least_loaded(ComplaintCategory.PLUMBING)

    assert chosen.id == "staff-9"
    assert chosen.specializations == (ComplaintCategory.CLEANING,)
    assert chosen.created_at.tzinfo is timezone.utc
    first_call, second_call = connection.fetchrow.await_args_list
    assert first_call.args[1] == "Plumbing"
    assert second_call.args[1] is None


@pytest.mark.asyncio
async def test_postgres_adjust_workload_clamps_in_sql():
    connection = AsyncMock()
    directory = PostgresStaffDirectory(DummyPool(connection))

    await directory.adjust_workload("staff-1", -1)

    sql, staff_id, delta = connection.execute.await_args.args
    assert "GREATEST(active_complaints + $2, 0)" in sql
    assert (staff_id, delta) == ("staff-1", -1)
