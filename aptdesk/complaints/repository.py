from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol, Sequence

import asyncpg

from .errors import ConcurrentModificationError, NotFoundError
from .models import (
    Comment,
    CommentVisibility,
    Complaint,
    ComplaintCategory,
    ComplaintFilter,
    ComplaintPriority,
    InternalNote,
    Location,
    MediaRef,
    MediaType,
    PriorityChange,
    Rating,
    SlaInfo,
    StatusChange,
    WorkUpdate,
)
from .state import ComplaintStatus


class ComplaintRepository(Protocol):
    """Persistence contract for complaint documents."""

    async def ensure_schema(self) -> None:
        ...

    async def insert(self, complaint: Complaint) -> Complaint:
        ...

    async def get(self, complaint_id: str) -> Complaint | None:
        ...

    async def save(self, complaint: Complaint, *, expected_version: int) -> Complaint:
        ...

    async def list(
        self, criteria: ComplaintFilter, *, offset: int = 0, limit: int = 20
    ) -> tuple[list[Complaint], int]:
        ...

    async def count(self) -> int:
        ...

    async def count_by_owner(self, created_by: str, statuses: Sequence[ComplaintStatus]) -> int:
        ...


class InMemoryComplaintRepository:
    """Process local store keeping serialised documents, mainly for development and tests."""

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}

    async def ensure_schema(self) -> None:
        return None

    async def insert(self, complaint: Complaint) -> Complaint:
        if complaint.id in self._documents:
            raise ConcurrentModificationError(f"Complaint {complaint.id} already exists")
        stored = replace(complaint, version=1)
        self._documents[complaint.id] = to_document(stored)
        return from_document(self._documents[complaint.id])

    async def get(self, complaint_id: str) -> Complaint | None:
        document = self._documents.get(complaint_id)
        if document is None:
            return None
        return from_document(document)

    async def save(self, complaint: Complaint, *, expected_version: int) -> Complaint:
        current = self._documents.get(complaint.id)
        if current is None:
            raise NotFoundError(f"Complaint {complaint.id} not found")
        if current["version"] != expected_version:
            raise ConcurrentModificationError(
                f"Complaint {complaint.id} was modified concurrently "
                f"(expected version {expected_version}, found {current['version']})"
            )
        stored = replace(complaint, version=expected_version + 1)
        self._documents[complaint.id] = to_document(stored)
        return from_document(self._documents[complaint.id])

    async def list(
        self, criteria: ComplaintFilter, *, offset: int = 0, limit: int = 20
    ) -> tuple[list[Complaint], int]:
        matches = [
            complaint
            for complaint in (from_document(document) for document in self._documents.values())
            if _matches(complaint, criteria)
        ]
        matches.sort(key=lambda item: item.created_at, reverse=True)
        return matches[offset : offset + limit], len(matches)

    async def count(self) -> int:
        return len(self._documents)

    async def count_by_owner(self, created_by: str, statuses: Sequence[ComplaintStatus]) -> int:
        wanted = {status.value for status in statuses}
        return sum(
            1
            for document in self._documents.values()
            if document["created_by"] == created_by and document["status"] in wanted
        )


def _matches(complaint: Complaint, criteria: ComplaintFilter) -> bool:
    if criteria.created_by is not None and complaint.created_by != criteria.created_by:
        return False
    if criteria.handled_by is not None and not complaint.was_handled_by(criteria.handled_by):
        return False
    if criteria.status is not None and complaint.status != criteria.status:
        return False
    if criteria.category is not None and complaint.category != criteria.category:
        return False
    if criteria.priority is not None and complaint.priority != criteria.priority:
        return False
    return True


class PostgresComplaintRepository:
    """Store complaints as JSONB documents with a version column for compare-and-set writes."""

    _CREATE_COMPLAINTS_SQL = """
    CREATE TABLE IF NOT EXISTS complaints (
        id TEXT PRIMARY KEY,
        ticket_number TEXT NOT NULL UNIQUE,
        created_by TEXT NOT NULL,
        status TEXT NOT NULL,
        category TEXT NOT NULL,
        priority TEXT NOT NULL,
        assigned_staff TEXT NULL,
        last_assigned_staff TEXT NULL,
        version INTEGER NOT NULL,
        document JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_INDEXES_SQL = (
        "CREATE INDEX IF NOT EXISTS complaints_owner_status_idx ON complaints (created_by, status)",
        "CREATE INDEX IF NOT EXISTS complaints_staff_status_idx ON complaints (assigned_staff, status)",
        "CREATE INDEX IF NOT EXISTS complaints_status_created_idx ON complaints (status, created_at)",
    )

    _INSERT_SQL = """
    INSERT INTO complaints (
        id, ticket_number, created_by, status, category, priority,
        assigned_staff, last_assigned_staff, version, document, created_at, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 1, $9::jsonb, $10, $11)
    """

    _SELECT_SQL = """
    SELECT version, document FROM complaints WHERE id = $1
    """

    _UPDATE_SQL = """
    UPDATE complaints
    SET status = $3,
        priority = $4,
        assigned_staff = $5,
        last_assigned_staff = $6,
        version = $2 + 1,
        document = $7::jsonb,
        updated_at = $8
    WHERE id = $1 AND version = $2
    RETURNING version
    """

    _SELECT_VERSION_SQL = """
    SELECT version FROM complaints WHERE id = $1
    """

    _COUNT_SQL = """
    SELECT COUNT(*) FROM complaints
    """

    _COUNT_BY_OWNER_SQL = """
    SELECT COUNT(*) FROM complaints WHERE created_by = $1 AND status = ANY($2::text[])
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_COMPLAINTS_SQL)
            for statement in self._CREATE_INDEXES_SQL:
                await connection.execute(statement)

    async def insert(self, complaint: Complaint) -> Complaint:
        stored = replace(complaint, version=1)
        async with self._pool.acquire() as connection:
            await connection.execute(
                self._INSERT_SQL,
                stored.id,
                stored.ticket_number,
                stored.created_by,
                stored.status.value,
                stored.category.value,
                stored.priority.value,
                stored.assigned_staff,
                stored.last_assigned_staff,
                json.dumps(to_document(stored)),
                stored.created_at,
                stored.updated_at,
            )
        return stored

    async def get(self, complaint_id: str) -> Complaint | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_SQL, complaint_id)
        if row is None:
            return None
        return self._row_to_complaint(row)

    async def save(self, complaint: Complaint, *, expected_version: int) -> Complaint:
        stored = replace(complaint, version=expected_version + 1)
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(
                self._UPDATE_SQL,
                stored.id,
                expected_version,
                stored.status.value,
                stored.priority.value,
                stored.assigned_staff,
                stored.last_assigned_staff,
                json.dumps(to_document(stored)),
                stored.updated_at,
            )
            if row is None:
                existing = await connection.fetchrow(self._SELECT_VERSION_SQL, stored.id)
                if existing is None:
                    raise NotFoundError(f"Complaint {stored.id} not found")
                raise ConcurrentModificationError(
                    f"Complaint {stored.id} was modified concurrently "
                    f"(expected version {expected_version}, found {existing['version']})"
                )
        return stored

    async def list(
        self, criteria: ComplaintFilter, *, offset: int = 0, limit: int = 20
    ) -> tuple[list[Complaint], int]:
        where, params = self._build_where(criteria)
        select_sql = (
            f"SELECT version, document FROM complaints{where} "
            f"ORDER BY created_at DESC OFFSET ${len(params) + 1} LIMIT ${len(params) + 2}"
        )
        count_sql = f"SELECT COUNT(*) FROM complaints{where}"
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(select_sql, *params, offset, limit)
            total = await connection.fetchval(count_sql, *params)
        return [self._row_to_complaint(row) for row in rows], int(total or 0)

    async def count(self) -> int:
        async with self._pool.acquire() as connection:
            total = await connection.fetchval(self._COUNT_SQL)
        return int(total or 0)

    async def count_by_owner(self, created_by: str, statuses: Sequence[ComplaintStatus]) -> int:
        async with self._pool.acquire() as connection:
            total = await connection.fetchval(
                self._COUNT_BY_OWNER_SQL, created_by, [status.value for status in statuses]
            )
        return int(total or 0)

    @staticmethod
    def _build_where(criteria: ComplaintFilter) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if criteria.created_by is not None:
            params.append(criteria.created_by)
            clauses.append(f"created_by = ${len(params)}")
        if criteria.handled_by is not None:
            params.append(criteria.handled_by)
            clauses.append(f"(assigned_staff = ${len(params)} OR last_assigned_staff = ${len(params)})")
        if criteria.status is not None:
            params.append(criteria.status.value)
            clauses.append(f"status = ${len(params)}")
        if criteria.category is not None:
            params.append(criteria.category.value)
            clauses.append(f"category = ${len(params)}")
        if criteria.priority is not None:
            params.append(criteria.priority.value)
            clauses.append(f"priority = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @staticmethod
    def _row_to_complaint(row: Mapping[str, Any]) -> Complaint:
        document = row["document"]
        if isinstance(document, (str, bytes)):
            document = json.loads(document)
        complaint = from_document(document)
        complaint.version = int(row["version"])
        return complaint


def to_document(complaint: Complaint) -> dict[str, Any]:
    """Serialise a complaint into a JSON compatible document."""

    return {
        "id": complaint.id,
        "ticket_number": complaint.ticket_number,
        "title": complaint.title,
        "description": complaint.description,
        "category": complaint.category.value,
        "priority": complaint.priority.value,
        "status": complaint.status.value,
        "created_by": complaint.created_by,
        "created_at": _dt(complaint.created_at),
        "updated_at": _dt(complaint.updated_at),
        "sub_category": complaint.sub_category,
        "location": {
            "specific_location": complaint.location.specific_location,
            "access_instructions": complaint.location.access_instructions,
            "wing": complaint.location.wing,
            "flat_number": complaint.location.flat_number,
            "floor_number": complaint.location.floor_number,
        },
        "media": [_media_doc(item) for item in complaint.media],
        "assigned_staff": complaint.assigned_staff,
        "assigned_at": _dt(complaint.assigned_at),
        "assigned_by": complaint.assigned_by,
        "last_assigned_staff": complaint.last_assigned_staff,
        "work_updates": [
            {
                "author": item.author,
                "text": item.text,
                "timestamp": _dt(item.timestamp),
                "images": [_media_doc(image) for image in item.images],
            }
            for item in complaint.work_updates
        ],
        "comments": [
            {
                "author": item.author,
                "author_role": item.author_role,
                "text": item.text,
                "timestamp": _dt(item.timestamp),
                "visibility": item.visibility.value,
            }
            for item in complaint.comments
        ],
        "internal_notes": [
            {"author": item.author, "text": item.text, "timestamp": _dt(item.timestamp)}
            for item in complaint.internal_notes
        ],
        "admin_media": [_media_doc(item) for item in complaint.admin_media],
        "rating": None
        if complaint.rating is None
        else {
            "score": complaint.rating.score,
            "comment": complaint.rating.comment,
            "rated_at": _dt(complaint.rating.rated_at),
        },
        "priority_history": [
            {
                "old_value": item.old_value.value,
                "new_value": item.new_value.value,
                "changed_by": item.changed_by,
                "timestamp": _dt(item.timestamp),
            }
            for item in complaint.priority_history
        ],
        "status_history": [
            {
                "from_status": None if item.from_status is None else item.from_status.value,
                "to_status": item.to_status.value,
                "event": item.event,
                "actor": item.actor,
                "actor_role": item.actor_role,
                "timestamp": _dt(item.timestamp),
                "reason": item.reason,
            }
            for item in complaint.status_history
        ],
        "sla": {
            "expected_resolution": _dt(complaint.sla.expected_resolution),
            "in_progress_at": _dt(complaint.sla.in_progress_at),
            "actual_resolution": _dt(complaint.sla.actual_resolution),
            "is_breached": complaint.sla.is_breached,
            "resolution_time_hours": complaint.sla.resolution_time_hours,
        },
        "resolved_at": _dt(complaint.resolved_at),
        "closed_at": _dt(complaint.closed_at),
        "cancelled_at": _dt(complaint.cancelled_at),
        "cancellation_reason": complaint.cancellation_reason,
        "reopened_at": _dt(complaint.reopened_at),
        "version": complaint.version,
    }


def from_document(document: Mapping[str, Any]) -> Complaint:
    """Rebuild a complaint aggregate from its stored document."""

    location = document.get("location") or {}
    rating = document.get("rating")
    sla = document.get("sla") or {}
    return Complaint(
        id=str(document["id"]),
        ticket_number=str(document["ticket_number"]),
        title=str(document["title"]),
        description=str(document["description"]),
        category=ComplaintCategory(document["category"]),
        priority=ComplaintPriority(document["priority"]),
        status=ComplaintStatus(document["status"]),
        created_by=str(document["created_by"]),
        created_at=_ensure_datetime(document["created_at"]),
        updated_at=_ensure_datetime(document["updated_at"]),
        sub_category=document.get("sub_category"),
        location=Location(**location),
        media=[_media_from(item) for item in document.get("media") or []],
        assigned_staff=document.get("assigned_staff"),
        assigned_at=_optional_datetime(document.get("assigned_at")),
        assigned_by=document.get("assigned_by"),
        last_assigned_staff=document.get("last_assigned_staff"),
        work_updates=[
            WorkUpdate(
                author=item["author"],
                text=item["text"],
                timestamp=_ensure_datetime(item["timestamp"]),
                images=[_media_from(image) for image in item.get("images") or []],
            )
            for item in document.get("work_updates") or []
        ],
        comments=[
            Comment(
                author=item["author"],
                author_role=item["author_role"],
                text=item["text"],
                timestamp=_ensure_datetime(item["timestamp"]),
                visibility=CommentVisibility(item.get("visibility", CommentVisibility.PUBLIC.value)),
            )
            for item in document.get("comments") or []
        ],
        internal_notes=[
            InternalNote(author=item["author"], text=item["text"], timestamp=_ensure_datetime(item["timestamp"]))
            for item in document.get("internal_notes") or []
        ],
        admin_media=[_media_from(item) for item in document.get("admin_media") or []],
        rating=None
        if rating is None
        else Rating(score=int(rating["score"]), comment=rating.get("comment"), rated_at=_ensure_datetime(rating["rated_at"])),
        priority_history=[
            PriorityChange(
                old_value=ComplaintPriority(item["old_value"]),
                new_value=ComplaintPriority(item["new_value"]),
                changed_by=item["changed_by"],
                timestamp=_ensure_datetime(item["timestamp"]),
            )
            for item in document.get("priority_history") or []
        ],
        status_history=[
            StatusChange(
                from_status=ComplaintStatus(item["from_status"]) if item.get("from_status") else None,
                to_status=ComplaintStatus(item["to_status"]),
                event=item["event"],
                actor=item["actor"],
                actor_role=item["actor_role"],
                timestamp=_ensure_datetime(item["timestamp"]),
                reason=item.get("reason"),
            )
            for item in document.get("status_history") or []
        ],
        sla=SlaInfo(
            expected_resolution=_optional_datetime(sla.get("expected_resolution")),
            in_progress_at=_optional_datetime(sla.get("in_progress_at")),
            actual_resolution=_optional_datetime(sla.get("actual_resolution")),
            is_breached=bool(sla.get("is_breached", False)),
            resolution_time_hours=sla.get("resolution_time_hours"),
        ),
        resolved_at=_optional_datetime(document.get("resolved_at")),
        closed_at=_optional_datetime(document.get("closed_at")),
        cancelled_at=_optional_datetime(document.get("cancelled_at")),
        cancellation_reason=document.get("cancellation_reason"),
        reopened_at=_optional_datetime(document.get("reopened_at")),
        version=int(document.get("version", 0)),
    )


def _media_doc(media: MediaRef) -> dict[str, Any]:
    return {
        "url": media.url,
        "public_id": media.public_id,
        "type": media.type.value,
        "uploaded_at": _dt(media.uploaded_at),
    }


def _media_from(item: Mapping[str, Any]) -> MediaRef:
    return MediaRef(
        url=item["url"],
        public_id=item.get("public_id"),
        type=MediaType(item.get("type", MediaType.IMAGE.value)),
        uploaded_at=_optional_datetime(item.get("uploaded_at")),
    )


def _dt(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


def _optional_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    return _ensure_datetime(value)


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed
