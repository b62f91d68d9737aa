"""Leave Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Create / *Update / *Request  → request bodies (write)
  - *Out                           → response bodies (read)
  - *Brief                         → compact embedded representations
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

from timeoff.common.constants import DEFAULT_LEAVE_COLOR, ApplicableGender, LeaveStatus
from timeoff.leave import transitions

COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


# ═════════════════════════════════════════════════════════════════════
# Embedded / shared
# ═════════════════════════════════════════════════════════════════════


class LeaveTypeBrief(BaseModel):
    """Minimal leave type info embedded in balance responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    color: str = DEFAULT_LEAVE_COLOR


# ═════════════════════════════════════════════════════════════════════
# Leave Type (policy)
# ═════════════════════════════════════════════════════════════════════


def _clean_genders(v: list[ApplicableGender]) -> list[ApplicableGender]:
    if not v:
        raise ValueError("At least one applicable gender is required.")
    if ApplicableGender.all in v:
        return [ApplicableGender.all]
    return sorted(set(v), key=lambda g: g.value)


class LeaveTypeCreate(BaseModel):
    """Payload for creating a leave type."""

    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    yearly_allotment: Decimal = Field(..., ge=0, max_digits=5, decimal_places=1)
    max_consecutive_days: int = Field(..., ge=1)
    carry_forward_allowed: bool = False
    max_carry_forward_days: Decimal = Field(
        Decimal("0"), ge=0, max_digits=5, decimal_places=1,
    )
    encashment_allowed: bool = False
    attachment_required: bool = False
    min_service_months: int = Field(0, ge=0)
    applicable_genders: list[ApplicableGender] = Field(
        default_factory=lambda: [ApplicableGender.all],
    )
    color: str = Field(DEFAULT_LEAVE_COLOR, pattern=COLOR_PATTERN)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name must not be blank.")
        return v

    @field_validator("applicable_genders")
    @classmethod
    def validate_genders(cls, v: list[ApplicableGender]) -> list[ApplicableGender]:
        return _clean_genders(v)

    @model_validator(mode="after")
    def validate_carry_forward(self) -> "LeaveTypeCreate":
        if not self.carry_forward_allowed and self.max_carry_forward_days > 0:
            raise ValueError(
                "max_carry_forward_days must be 0 when carry forward is not allowed."
            )
        return self


class LeaveTypeUpdate(BaseModel):
    """Partial update of a leave type. Omitted fields are left unchanged."""

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    yearly_allotment: Optional[Decimal] = Field(None, ge=0, max_digits=5, decimal_places=1)
    max_consecutive_days: Optional[int] = Field(None, ge=1)
    carry_forward_allowed: Optional[bool] = None
    max_carry_forward_days: Optional[Decimal] = Field(
        None, ge=0, max_digits=5, decimal_places=1,
    )
    encashment_allowed: Optional[bool] = None
    attachment_required: Optional[bool] = None
    min_service_months: Optional[int] = Field(None, ge=0)
    applicable_genders: Optional[list[ApplicableGender]] = None
    color: Optional[str] = Field(None, pattern=COLOR_PATTERN)
    is_active: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Name must not be blank.")
        return v

    @field_validator("applicable_genders")
    @classmethod
    def validate_genders(
        cls, v: Optional[list[ApplicableGender]],
    ) -> Optional[list[ApplicableGender]]:
        return None if v is None else _clean_genders(v)


class LeaveTypeOut(BaseModel):
    """Full leave type representation."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: Optional[str] = None
    yearly_allotment: Decimal
    max_consecutive_days: int
    carry_forward_allowed: bool
    max_carry_forward_days: Decimal
    encashment_allowed: bool
    attachment_required: bool
    min_service_months: int
    applicable_genders: list[str]
    color: str
    is_active: bool
    created_by: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: datetime


# ═════════════════════════════════════════════════════════════════════
# Leave Balance
# ═════════════════════════════════════════════════════════════════════


class LeaveBalanceOut(BaseModel):
    """One ledger account."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    year: int
    allocated: Decimal
    used: Decimal
    pending: Decimal
    carried_forward: Decimal
    encashed: Decimal
    remaining: Decimal
    version: int
    updated_at: datetime

    leave_type: Optional[LeaveTypeBrief] = None


class BalanceInitializeRequest(BaseModel):
    """Initialize balances for one employee or everybody for a year."""

    year: Optional[int] = Field(None, ge=2000, le=2100)


class BalanceInitializeOut(BaseModel):
    year: int
    employees_processed: int
    balances_created: int


class BalanceCreateRequest(BaseModel):
    """Open one balance with explicit amounts (HR)."""

    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    year: int = Field(..., ge=2000, le=2100)
    allocated: Decimal = Field(..., ge=0, max_digits=5, decimal_places=1)
    carried_forward: Decimal = Field(Decimal("0"), ge=0, max_digits=5, decimal_places=1)


class EmployeeBalancesOut(BaseModel):
    """One employee's balances for a year, as listed in the HR view."""

    employee_id: uuid.UUID
    employee_code: str
    name: str
    department: Optional[str] = None
    balances: list[LeaveBalanceOut] = Field(default_factory=list)


class BalanceAdjustRequest(BaseModel):
    """Admin correction of the non-consumption fields."""

    allocated: Optional[Decimal] = Field(None, ge=0, max_digits=5, decimal_places=1)
    carried_forward: Optional[Decimal] = Field(None, ge=0, max_digits=5, decimal_places=1)
    encashed: Optional[Decimal] = Field(None, ge=0, max_digits=5, decimal_places=1)
    reason: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def at_least_one_field(self) -> "BalanceAdjustRequest":
        if self.allocated is None and self.carried_forward is None and self.encashed is None:
            raise ValueError(
                "Provide at least one of allocated, carried_forward, encashed."
            )
        return self


class BalanceEncashRequest(BaseModel):
    leave_type_id: uuid.UUID
    year: int = Field(..., ge=2000, le=2100)
    days: Decimal = Field(..., gt=0, max_digits=5, decimal_places=1)


class CarryForwardRequest(BaseModel):
    from_year: int = Field(..., ge=2000, le=2100)


# ═════════════════════════════════════════════════════════════════════
# Leave Request — write
# ═════════════════════════════════════════════════════════════════════


class ContactDuringLeave(BaseModel):
    phone: Optional[str] = Field(None, max_length=30)
    email: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = Field(None, max_length=500)


class LeaveRequestCreate(BaseModel):
    """Payload for submitting a leave request."""

    leave_type_id: uuid.UUID
    start_date: date = Field(..., description="Leave start date (inclusive)")
    end_date: date = Field(..., description="Leave end date (inclusive), after start_date")
    reason: str = Field(..., min_length=1, max_length=1000)
    attachments: list[str] = Field(default_factory=list, max_length=10)
    is_emergency: bool = False
    handover_notes: Optional[str] = Field(None, max_length=2000)
    contact_during_leave: Optional[ContactDuringLeave] = None

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Reason is required.")
        return v


class LeaveRequestUpdate(BaseModel):
    """Edit a pending request. Date changes re-book the balance."""

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reason: Optional[str] = Field(None, min_length=1, max_length=1000)
    attachments: Optional[list[str]] = Field(None, max_length=10)
    is_emergency: Optional[bool] = None
    handover_notes: Optional[str] = Field(None, max_length=2000)
    contact_during_leave: Optional[ContactDuringLeave] = None

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Reason is required.")
        return v


class LeaveApproveRequest(BaseModel):
    remarks: Optional[str] = Field(None, max_length=500)


class LeaveRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    comment: Optional[str] = Field(None, max_length=1000)

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Rejection reason is required.")
        return v


class LeaveCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class LeaveCommentCreate(BaseModel):
    body: str = Field(..., min_length=1, max_length=2000)

    @field_validator("body")
    @classmethod
    def body_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Comment is required.")
        return v


# ═════════════════════════════════════════════════════════════════════
# Leave Request — read
# ═════════════════════════════════════════════════════════════════════


class LeaveCommentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    author_id: uuid.UUID
    body: str
    created_at: datetime


class LeaveRequestOut(BaseModel):
    """Full leave request response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    start_date: date
    end_date: date
    balance_year: int
    total_days: Decimal
    reason: str
    status: LeaveStatus
    applied_at: datetime
    approved_by: Optional[uuid.UUID] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[uuid.UUID] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancelled_by: Optional[uuid.UUID] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    attachments: list[str] = Field(default_factory=list)
    is_emergency: bool = False
    handover_notes: Optional[str] = None
    contact_during_leave: Optional[dict] = None
    version: int
    comments: list[LeaveCommentOut] = Field(default_factory=list)

    @computed_field
    @property
    def allowed_actions(self) -> list[str]:
        """Lifecycle actions still possible from the current status."""
        return [action.value for action in transitions.allowed_actions(self.status)]

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return transitions.is_terminal(self.status)


# ═════════════════════════════════════════════════════════════════════
# Reports
# ═════════════════════════════════════════════════════════════════════


class LeaveTypeUtilization(BaseModel):
    leave_type_id: uuid.UUID
    leave_type_name: str
    color: str
    employee_count: int
    total_allocated: Decimal
    total_carried_forward: Decimal
    total_used: Decimal
    total_pending: Decimal
    total_encashed: Decimal
    total_remaining: Decimal
    utilization_percentage: Decimal


class StatusBreakdownOut(BaseModel):
    year: int
    employee_id: Optional[uuid.UUID] = None
    counts: dict[LeaveStatus, int]
    days: dict[LeaveStatus, Decimal]
    total_requests: int


class LedgerCheckOut(BaseModel):
    """Cross-check of a balance against the requests booked on it."""

    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    year: int
    balance_found: bool
    recorded_pending: Decimal
    expected_pending: Decimal
    recorded_used: Decimal
    expected_used: Decimal
    recorded_remaining: Decimal
    expected_remaining: Decimal
    consistent: bool
