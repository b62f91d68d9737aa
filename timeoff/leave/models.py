"""Leave ORM models: LeaveType, LeaveBalance, LeaveRequest, LeaveComment."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, NamedTuple, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from timeoff.common.audit import JSONType, utcnow
from timeoff.common.constants import (
    DEFAULT_LEAVE_COLOR,
    ApplicableGender,
    GenderType,
    LeaveStatus,
)
from timeoff.database import Base

if TYPE_CHECKING:
    from timeoff.core_hr.models import Employee

ZERO = Decimal("0")

DAYS = sa.Numeric(5, 1)


class BalanceKey(NamedTuple):
    """Identity of one ledger account."""

    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    year: int


# ═════════════════════════════════════════════════════════════════════
# Leave Type (policy)
# ═════════════════════════════════════════════════════════════════════


class LeaveType(Base):
    __tablename__ = "leave_types"
    __table_args__ = (
        sa.CheckConstraint("yearly_allotment >= 0", name="ck_leave_type_allotment"),
        sa.CheckConstraint("max_consecutive_days >= 1", name="ck_leave_type_consecutive"),
        sa.CheckConstraint("max_carry_forward_days >= 0", name="ck_leave_type_carry_cap"),
        sa.CheckConstraint("min_service_months >= 0", name="ck_leave_type_service"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.Text)
    yearly_allotment: Mapped[Decimal] = mapped_column(DAYS, nullable=False)
    max_consecutive_days: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    carry_forward_allowed: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False,
    )
    max_carry_forward_days: Mapped[Decimal] = mapped_column(
        DAYS, nullable=False, default=ZERO,
    )
    encashment_allowed: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False,
    )
    attachment_required: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False,
    )
    min_service_months: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, default=0,
    )
    applicable_genders: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=lambda: [ApplicableGender.all.value],
    )
    color: Mapped[str] = mapped_column(
        sa.String(7), nullable=False, default=DEFAULT_LEAVE_COLOR,
    )
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, onupdate=utcnow,
    )

    # Relationships
    balances: Mapped[list[LeaveBalance]] = relationship(back_populates="leave_type")
    requests: Mapped[list[LeaveRequest]] = relationship(back_populates="leave_type")

    def applies_to(self, gender: Optional[GenderType]) -> bool:
        """True if employees of *gender* may take this leave."""
        genders = set(self.applicable_genders or [ApplicableGender.all.value])
        if ApplicableGender.all.value in genders:
            return True
        return gender is not None and gender.value in genders

    def __repr__(self) -> str:
        return f"<LeaveType {self.name} active={self.is_active}>"


# ═════════════════════════════════════════════════════════════════════
# Leave Balance (ledger account)
# ═════════════════════════════════════════════════════════════════════


class LeaveBalance(Base):
    __tablename__ = "leave_balances"
    __table_args__ = (
        sa.UniqueConstraint(
            "employee_id", "leave_type_id", "year", name="uq_leave_balance"
        ),
        sa.CheckConstraint("allocated >= 0", name="ck_leave_balance_allocated"),
        sa.CheckConstraint("used >= 0", name="ck_leave_balance_used"),
        sa.CheckConstraint("pending >= 0", name="ck_leave_balance_pending"),
        sa.CheckConstraint("carried_forward >= 0", name="ck_leave_balance_carried"),
        sa.CheckConstraint("encashed >= 0", name="ck_leave_balance_encashed"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("employees.id"), nullable=False
    )
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("leave_types.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    allocated: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=ZERO)
    used: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=ZERO)
    pending: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=ZERO)
    carried_forward: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=ZERO)
    encashed: Mapped[Decimal] = mapped_column(DAYS, nullable=False, default=ZERO)
    # Derived; written only by recompute_remaining()
    remaining: Mapped[Decimal] = mapped_column(sa.Numeric(6, 1), nullable=False, default=ZERO)
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, onupdate=utcnow,
    )

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    employee: Mapped["Employee"] = relationship(back_populates="leave_balances")
    leave_type: Mapped[LeaveType] = relationship(
        back_populates="balances", lazy="selectin",
    )

    @property
    def key(self) -> BalanceKey:
        return BalanceKey(self.employee_id, self.leave_type_id, self.year)

    def recompute_remaining(self) -> Decimal:
        """remaining = allocated + carried_forward − used − pending − encashed."""
        for field in ("allocated", "used", "pending", "carried_forward", "encashed"):
            if getattr(self, field) is None:
                setattr(self, field, ZERO)
        self.remaining = (
            Decimal(self.allocated)
            + Decimal(self.carried_forward)
            - Decimal(self.used)
            - Decimal(self.pending)
            - Decimal(self.encashed)
        )
        return self.remaining

    def __repr__(self) -> str:
        return (
            f"<LeaveBalance {self.employee_id}/{self.leave_type_id}/{self.year} "
            f"alloc={self.allocated} used={self.used} pending={self.pending} "
            f"remaining={self.remaining}>"
        )


@sa.event.listens_for(LeaveBalance, "before_insert")
@sa.event.listens_for(LeaveBalance, "before_update")
def _recompute_before_write(mapper, connection, target: LeaveBalance) -> None:
    target.recompute_remaining()


# ═════════════════════════════════════════════════════════════════════
# Leave Request
# ═════════════════════════════════════════════════════════════════════


class LeaveRequest(Base):
    __tablename__ = "leave_requests"
    __table_args__ = (
        sa.CheckConstraint("end_date > start_date", name="ck_leave_request_dates"),
        sa.CheckConstraint("total_days > 0", name="ck_leave_request_days"),
        sa.Index("ix_leave_requests_employee_status", "employee_id", "status"),
        sa.Index(
            "ix_leave_requests_balance_key", "employee_id", "leave_type_id", "balance_year",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("employees.id"), nullable=False
    )
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("leave_types.id"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    end_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    # Ledger year the days are booked against; fixed at submission
    balance_year: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    total_days: Mapped[Decimal] = mapped_column(DAYS, nullable=False)
    reason: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[LeaveStatus] = mapped_column(
        sa.Enum(LeaveStatus, name="leave_status"),
        nullable=False,
        default=LeaveStatus.pending,
    )
    applied_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow,
    )

    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid)
    approved_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    rejection_reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    cancellation_reason: Mapped[Optional[str]] = mapped_column(sa.Text)

    attachments: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_emergency: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    handover_notes: Mapped[Optional[str]] = mapped_column(sa.Text)
    contact_during_leave: Mapped[Optional[dict]] = mapped_column(JSONType)

    version: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, onupdate=utcnow,
    )

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    employee: Mapped["Employee"] = relationship(
        back_populates="leave_requests", foreign_keys=[employee_id]
    )
    leave_type: Mapped[LeaveType] = relationship(back_populates="requests")
    comments: Mapped[list[LeaveComment]] = relationship(
        back_populates="leave_request",
        order_by="LeaveComment.created_at",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def balance_key(self) -> BalanceKey:
        return BalanceKey(self.employee_id, self.leave_type_id, self.balance_year)

    def __repr__(self) -> str:
        return (
            f"<LeaveRequest {self.id} {self.start_date}..{self.end_date} "
            f"{self.total_days}d {self.status.value}>"
        )


class LeaveComment(Base):
    """Append-only comment on a leave request."""

    __tablename__ = "leave_comments"

    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    leave_request_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("leave_requests.id"), nullable=False, index=True,
    )
    author_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, nullable=False)
    body: Mapped[str] = mapped_column(sa.Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow,
    )

    leave_request: Mapped[LeaveRequest] = relationship(back_populates="comments")
