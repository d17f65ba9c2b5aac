from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence

import asyncpg

from .models import ComplaintCategory


class StaffAvailability(str, Enum):
    AVAILABLE = "Available"
    BUSY = "Busy"
    ON_BREAK = "On Break"
    OFFLINE = "Offline"


@dataclass(slots=True)
class StaffMember:
    """Maintenance staff profile; ``id`` is the staff user's id."""

    id: str
    name: str
    created_at: datetime
    is_active: bool = True
    availability: StaffAvailability = StaffAvailability.AVAILABLE
    active_complaints: int = 0
    max_capacity: int = 10
    specializations: Sequence[ComplaintCategory] = field(default_factory=tuple)

    def is_available(self) -> bool:
        return (
            self.is_active
            and self.availability is StaffAvailability.AVAILABLE
            and self.active_complaints < self.max_capacity
        )

    def handles(self, category: ComplaintCategory) -> bool:
        return category in self.specializations


class StaffDirectory(Protocol):
    async def get_staff(self, staff_id: str) -> StaffMember | None:
        ...

    async def find_least_loaded(self, category: ComplaintCategory | None = None) -> StaffMember | None:
        ...

    async def adjust_workload(self, staff_id: str, delta: int) -> None:
        ...


def _least_loaded(candidates: Sequence[StaffMember]) -> StaffMember | None:
    if not candidates:
        return None
    return min(candidates, key=lambda member: (member.active_complaints, member.created_at))


class InMemoryStaffDirectory:
    """Staff directory held in process memory."""

    def __init__(self, members: Sequence[StaffMember] = ()) -> None:
        self._members: dict[str, StaffMember] = {member.id: member for member in members}

    def add(self, member: StaffMember) -> None:
        self._members[member.id] = member

    async def get_staff(self, staff_id: str) -> StaffMember | None:
        return self._members.get(staff_id)

    async def find_least_loaded(self, category: ComplaintCategory | None = None) -> StaffMember | None:
        available = [member for member in self._members.values() if member.is_available()]
        if category is not None:
            specialists = [member for member in available if member.handles(category)]
            if specialists:
                return _least_loaded(specialists)
        return _least_loaded(available)

    async def adjust_workload(self, staff_id: str, delta: int) -> None:
        member = self._members.get(staff_id)
        if member is not None:
            member.active_complaints = max(member.active_complaints + delta, 0)


class PostgresStaffDirectory:
    """Staff directory backed by the ``staff`` table."""

    _CREATE_STAFF_SQL = """
    CREATE TABLE IF NOT EXISTS staff (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        availability TEXT NOT NULL DEFAULT 'Available',
        active_complaints INTEGER NOT NULL DEFAULT 0,
        max_capacity INTEGER NOT NULL DEFAULT 10,
        specializations TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _SELECT_STAFF_SQL = """
    SELECT id, name, is_active, availability, active_complaints, max_capacity, specializations, created_at
    FROM staff
    WHERE id = $1
    """

    _SELECT_LEAST_LOADED_SQL = """
    SELECT id, name, is_active, availability, active_complaints, max_capacity, specializations, created_at
    FROM staff
    WHERE is_active
      AND availability = 'Available'
      AND active_complaints < max_capacity
      AND ($1::text IS NULL OR $1 = ANY(specializations))
    ORDER BY active_complaints ASC, created_at ASC
    LIMIT 1
    """

    _ADJUST_WORKLOAD_SQL = """
    UPDATE staff
    SET active_complaints = GREATEST(active_complaints + $2, 0)
    WHERE id = $1
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_STAFF_SQL)

    async def get_staff(self, staff_id: str) -> StaffMember | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_STAFF_SQL, staff_id)
        if row is None:
            return None
        return self._row_to_staff(row)

    async def find_least_loaded(self, category: ComplaintCategory | None = None) -> StaffMember | None:
        async with self._pool.acquire() as connection:
            row = None
            if category is not None:
                row = await connection.fetchrow(self._SELECT_LEAST_LOADED_SQL, category.value)
            if row is None:
                row = await connection.fetchrow(self._SELECT_LEAST_LOADED_SQL, None)
        if row is None:
            return None
        return self._row_to_staff(row)

    async def adjust_workload(self, staff_id: str, delta: int) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._ADJUST_WORKLOAD_SQL, staff_id, delta)

    @staticmethod
    def _row_to_staff(row: Mapping[str, Any]) -> StaffMember:
        created_at = row["created_at"]
        if isinstance(created_at, datetime) and created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return StaffMember(
            id=str(row["id"]),
            name=str(row["name"]),
            created_at=created_at,
            is_active=bool(row["is_active"]),
            availability=StaffAvailability(str(row["availability"])),
            active_complaints=int(row["active_complaints"]),
            max_capacity=int(row["max_capacity"]),
            specializations=tuple(ComplaintCategory(value) for value in row["specializations"] or ()),
        )
