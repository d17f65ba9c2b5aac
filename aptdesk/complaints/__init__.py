"""Complaint lifecycle domain models and services."""

from .errors import (
    AuthorizationError,
    ComplaintError,
    ConcurrentModificationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import Complaint, ComplaintCategory, ComplaintPriority
from .notifications import DomainEvent, LifecycleOrchestrator
from .policy import Action, Role, can_perform
from .service import ComplaintService
from .state import ComplaintEvent, ComplaintStateMachine, ComplaintStatus

__all__ = [
    "Action",
    "AuthorizationError",
    "Complaint",
    "ComplaintCategory",
    "ComplaintError",
    "ComplaintEvent",
    "ComplaintPriority",
    "ComplaintService",
    "ComplaintStateMachine",
    "ComplaintStatus",
    "ConcurrentModificationError",
    "ConflictError",
    "DomainEvent",
    "InvalidTransitionError",
    "LifecycleOrchestrator",
    "NotFoundError",
    "Role",
    "ValidationError",
    "can_perform",
]
