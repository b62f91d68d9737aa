"""Common module — shared utilities for the time-off service."""

from timeoff.common.audit import AuditTrail, create_audit_entry
from timeoff.common.constants import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    ApplicableGender,
    EventType,
    GenderType,
    LeaveStatus,
    UserRole,
)
from timeoff.common.exceptions import (
    AppException,
    ConcurrentUpdateError,
    ConflictError,
    ForbiddenException,
    InsufficientBalance,
    InvalidTransition,
    InvariantViolation,
    NotFoundException,
    PolicyViolation,
    ValidationException,
    register_exception_handlers,
)
from timeoff.common.pagination import (
    PaginatedResponse,
    PaginationMeta,
    PaginationParams,
    paginate,
)

__all__ = [
    # Audit
    "AuditTrail",
    "create_audit_entry",
    # Constants / Enums
    "ApplicableGender",
    "EventType",
    "GenderType",
    "LeaveStatus",
    "UserRole",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    # Exceptions
    "AppException",
    "ConcurrentUpdateError",
    "ConflictError",
    "ForbiddenException",
    "InsufficientBalance",
    "InvalidTransition",
    "InvariantViolation",
    "NotFoundException",
    "PolicyViolation",
    "ValidationException",
    "register_exception_handlers",
    # Pagination
    "PaginatedResponse",
    "PaginationMeta",
    "PaginationParams",
    "paginate",
]
