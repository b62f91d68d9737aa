"""Enums and constants for the time-off service — matching PostgreSQL ENUM types."""

from __future__ import annotations

import enum


# ── Directory ───────────────────────────────────────────────────────

class GenderType(str, enum.Enum):
    male = "male"
    female = "female"
    other = "other"
    undisclosed = "undisclosed"


class ApplicableGender(str, enum.Enum):
    """Gender filter on a leave type; ``all`` matches every employee."""

    all = "all"
    male = "male"
    female = "female"


# ── Auth / Roles ────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    employee = "employee"
    manager = "manager"
    hr_admin = "hr_admin"
    system_admin = "system_admin"


# Each role implicitly includes the roles listed for it
ROLE_HIERARCHY: dict[UserRole, set[UserRole]] = {
    UserRole.system_admin: {UserRole.system_admin, UserRole.hr_admin, UserRole.manager, UserRole.employee},
    UserRole.hr_admin: {UserRole.hr_admin, UserRole.manager, UserRole.employee},
    UserRole.manager: {UserRole.manager, UserRole.employee},
    UserRole.employee: {UserRole.employee},
}


# ── Leave ───────────────────────────────────────────────────────────

class LeaveStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"


TERMINAL_LEAVE_STATUSES = frozenset({LeaveStatus.rejected, LeaveStatus.cancelled})


# ── Events ──────────────────────────────────────────────────────────

class EventType(str, enum.Enum):
    leave_submitted = "leave.submitted"
    leave_updated = "leave.updated"
    leave_approved = "leave.approved"
    leave_rejected = "leave.rejected"
    leave_cancelled = "leave.cancelled"
    balance_created = "balance.created"
    balance_adjusted = "balance.adjusted"
    balance_encashed = "balance.encashed"
    balance_carried_forward = "balance.carried_forward"


# ── Misc constants ──────────────────────────────────────────────────

DEFAULT_LEAVE_COLOR = "#3B82F6"
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
