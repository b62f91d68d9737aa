"""Core HR ORM models: Employee.

The employee directory is owned by an external service; this table is the
read-only projection the leave core needs for eligibility checks (gender,
joining date), manager scoping and the active flag.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import TYPE_CHECKING, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from timeoff.common.audit import utcnow
from timeoff.common.constants import GenderType
from timeoff.database import Base

if TYPE_CHECKING:
    from timeoff.leave.models import LeaveBalance, LeaveRequest


class Employee(Base):
    """Employee profile as seen by the leave core."""

    __tablename__ = "employees"

    # ── Primary key ─────────────────────────────────────────────────
    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # ── Identifiers ─────────────────────────────────────────────────
    employee_code: Mapped[str] = mapped_column(
        sa.String(20), unique=True, nullable=False,
    )

    # ── Name / contact ──────────────────────────────────────────────
    first_name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(sa.String(255))
    email: Mapped[str] = mapped_column(
        sa.String(255), unique=True, nullable=False,
    )

    # ── Eligibility inputs ──────────────────────────────────────────
    gender: Mapped[Optional[GenderType]] = mapped_column(
        sa.Enum(GenderType, name="gender_type"),
    )
    date_of_joining: Mapped[date] = mapped_column(sa.Date, nullable=False)

    # ── Org hierarchy ───────────────────────────────────────────────
    department: Mapped[Optional[str]] = mapped_column(sa.String(100))
    reporting_manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        sa.Uuid, sa.ForeignKey("employees.id"),
    )

    # ── Status / Timestamps ─────────────────────────────────────────
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, onupdate=utcnow,
    )

    # ── Relationships ───────────────────────────────────────────────
    reporting_manager: Mapped[Optional[Employee]] = relationship(
        remote_side=[id], foreign_keys=[reporting_manager_id],
    )
    leave_balances: Mapped[list["LeaveBalance"]] = relationship(
        back_populates="employee",
    )
    leave_requests: Mapped[list["LeaveRequest"]] = relationship(
        back_populates="employee",
        foreign_keys="LeaveRequest.employee_id",
    )

    # ── Helpers ─────────────────────────────────────────────────────

    def months_of_service(self, on: date) -> int:
        """Whole calendar months between joining and *on* (0 if not yet joined)."""
        months = (on.year - self.date_of_joining.year) * 12 + (
            on.month - self.date_of_joining.month
        )
        if on.day < self.date_of_joining.day:
            months -= 1
        return max(months, 0)

    def __repr__(self) -> str:
        return (
            f"<Employee {self.employee_code} "
            f"{self.first_name} {self.last_name}>"
        )
