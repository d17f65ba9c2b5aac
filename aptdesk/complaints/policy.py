"""Declarative role authorization policy for complaint actions.

The whole rule set lives in ``_RULES``; :func:`can_perform` is the only place that
interprets it, and the service consults it exactly once per operation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Protocol

from .models import Complaint
from .state import TERMINAL_STATUSES, ComplaintStatus


class Role(str, Enum):
    """Supported roles."""

    RESIDENT = "resident"
    STAFF = "staff"
    ADMIN = "admin"


class Action(str, Enum):
    CREATE = "create"
    VIEW = "view"
    ASSIGN = "assign"
    ADD_WORK_UPDATE = "add_work_update"
    UPDATE_STATUS = "update_status"
    RATE = "rate"
    REOPEN = "reopen"
    CLOSE = "close"
    CANCEL = "cancel"
    ADD_COMMENT = "add_comment"
    ADD_ADMIN_MEDIA = "add_admin_media"
    ADD_INTERNAL_NOTE = "add_internal_note"
    UPDATE_PRIORITY = "update_priority"


class DenyReason(str, Enum):
    NOT_OWNER = "NOT_OWNER"
    NOT_ASSIGNED = "NOT_ASSIGNED"
    ROLE_FORBIDDEN = "ROLE_FORBIDDEN"
    INVALID_STATE_FOR_ACTION = "INVALID_STATE_FOR_ACTION"


class Relation(str, Enum):
    """How the actor must relate to the complaint for a rule to match."""

    ANY = "any"
    OWNER = "owner"
    ASSIGNED = "assigned"
    HANDLER = "handler"


class Actor(Protocol):
    id: str
    role: Role


@dataclass(frozen=True, slots=True)
class Rule:
    relation: Relation = Relation.ANY
    states: frozenset[ComplaintStatus] | None = None


@dataclass(frozen=True, slots=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason) -> "Decision":
        return cls(allowed=False, reason=reason)


_NON_TERMINAL = frozenset(set(ComplaintStatus) - TERMINAL_STATUSES)
_ADMIN_ONLY: Mapping[Role, Rule] = {Role.ADMIN: Rule()}

_RULES: Mapping[Action, Mapping[Role, Rule]] = {
    Action.CREATE: {Role.RESIDENT: Rule()},
    Action.VIEW: {
        Role.RESIDENT: Rule(Relation.OWNER),
        Role.STAFF: Rule(Relation.HANDLER),
        Role.ADMIN: Rule(),
    },
    Action.ASSIGN: _ADMIN_ONLY,
    Action.ADD_WORK_UPDATE: {Role.STAFF: Rule(Relation.ASSIGNED)},
    Action.UPDATE_STATUS: _ADMIN_ONLY,
    Action.RATE: {
        Role.RESIDENT: Rule(Relation.OWNER, frozenset({ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED})),
    },
    Action.REOPEN: {
        Role.RESIDENT: Rule(Relation.OWNER, frozenset({ComplaintStatus.CLOSED, ComplaintStatus.RESOLVED})),
    },
    Action.CLOSE: {
        Role.RESIDENT: Rule(Relation.OWNER, frozenset({ComplaintStatus.RESOLVED})),
        Role.ADMIN: Rule(),
    },
    Action.CANCEL: {
        Role.RESIDENT: Rule(Relation.OWNER, frozenset({ComplaintStatus.OPEN})),
        Role.ADMIN: Rule(states=_NON_TERMINAL),
    },
    Action.ADD_COMMENT: {
        Role.RESIDENT: Rule(Relation.OWNER),
        Role.STAFF: Rule(Relation.ASSIGNED),
        Role.ADMIN: Rule(),
    },
    Action.ADD_ADMIN_MEDIA: _ADMIN_ONLY,
    Action.ADD_INTERNAL_NOTE: _ADMIN_ONLY,
    Action.UPDATE_PRIORITY: _ADMIN_ONLY,
}


def _relation_holds(relation: Relation, actor_id: str, complaint: Complaint | None) -> bool:
    if relation is Relation.ANY:
        return True
    if complaint is None:
        return False
    if relation is Relation.OWNER:
        return complaint.is_owner(actor_id)
    if relation is Relation.ASSIGNED:
        return complaint.is_assigned_to(actor_id)
    return complaint.was_handled_by(actor_id)


def can_perform(role: Role, actor_id: str, action: Action, complaint: Complaint | None = None) -> Decision:
    """Decide whether ``actor_id`` acting as ``role`` may perform ``action`` on ``complaint``."""

    rule = _RULES[action].get(role)
    if rule is None:
        return Decision.deny(DenyReason.ROLE_FORBIDDEN)

    if not _relation_holds(rule.relation, actor_id, complaint):
        if rule.relation is Relation.OWNER:
            return Decision.deny(DenyReason.NOT_OWNER)
        return Decision.deny(DenyReason.NOT_ASSIGNED)

    if rule.states is not None and (complaint is None or complaint.status not in rule.states):
        return Decision.deny(DenyReason.INVALID_STATE_FOR_ACTION)

    return Decision.allow()


def permitted_actions(role: Role, actor_id: str, complaint: Complaint) -> list[Action]:
    """Return every action the policy allows ``actor_id`` on ``complaint`` right now."""

    return [
        action
        for action in Action
        if action is not Action.CREATE and can_perform(role, actor_id, action, complaint).allowed
    ]
