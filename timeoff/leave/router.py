"""Leave routers — policies, balances, requests and reports.

All endpoints require a bearer token. HR-only endpoints enforce the role via
``require_role``; ownership and manager scoping are checked in the services.
"""


import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timeoff.auth.dependencies import Actor, get_current_actor, require_role
from timeoff.common.constants import LeaveStatus, UserRole
from timeoff.common.exceptions import ForbiddenException
from timeoff.common.pagination import PaginatedResponse, PaginationParams
from timeoff.core_hr.models import Employee
from timeoff.database import get_db
from timeoff.leave.ledger import LeaveLedger
from timeoff.leave.models import BalanceKey
from timeoff.leave.policy import LeaveTypeService
from timeoff.leave.reports import LeaveReportService
from timeoff.leave.schemas import (
    BalanceAdjustRequest,
    BalanceCreateRequest,
    BalanceEncashRequest,
    BalanceInitializeOut,
    BalanceInitializeRequest,
    CarryForwardRequest,
    EmployeeBalancesOut,
    LeaveApproveRequest,
    LeaveBalanceOut,
    LeaveCancelRequest,
    LeaveCommentCreate,
    LeaveCommentOut,
    LeaveRejectRequest,
    LeaveRequestCreate,
    LeaveRequestOut,
    LeaveRequestUpdate,
    LeaveTypeCreate,
    LeaveTypeOut,
    LeaveTypeUpdate,
    LedgerCheckOut,
    LeaveTypeUtilization,
    StatusBreakdownOut,
)
from timeoff.leave.service import LeaveService

leave_types_router = APIRouter()
balances_router = APIRouter()
leaves_router = APIRouter()
reports_router = APIRouter()

_hr_only = require_role(UserRole.hr_admin)
_managers = require_role(UserRole.manager, UserRole.hr_admin, UserRole.system_admin)


def _current_year() -> int:
    return date.today().year


# ═════════════════════════════════════════════════════════════════════
# Leave types
# ═════════════════════════════════════════════════════════════════════


@leave_types_router.get("", response_model=list[LeaveTypeOut])
async def list_leave_types(
    include_inactive: bool = Query(False),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """List leave types; inactive ones only on request."""
    types = await LeaveTypeService.list_types(
        db, is_active=None if include_inactive else True,
    )
    return [LeaveTypeOut.model_validate(t) for t in types]


@leave_types_router.get("/{leave_type_id}", response_model=LeaveTypeOut)
async def get_leave_type(
    leave_type_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return LeaveTypeOut.model_validate(await LeaveTypeService.get(db, leave_type_id))


@leave_types_router.post("", response_model=LeaveTypeOut, status_code=201)
async def create_leave_type(
    body: LeaveTypeCreate,
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    leave_type = await LeaveTypeService.create(db, body, actor_id=actor.employee_id)
    return LeaveTypeOut.model_validate(leave_type)


@leave_types_router.patch("/{leave_type_id}", response_model=LeaveTypeOut)
async def update_leave_type(
    leave_type_id: uuid.UUID,
    body: LeaveTypeUpdate,
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    """Partial update. Balances already allocated are not rewritten."""
    leave_type = await LeaveTypeService.update(
        db, leave_type_id, body, actor_id=actor.employee_id,
    )
    return LeaveTypeOut.model_validate(leave_type)


@leave_types_router.post("/{leave_type_id}/deactivate", response_model=LeaveTypeOut)
async def deactivate_leave_type(
    leave_type_id: uuid.UUID,
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    leave_type = await LeaveTypeService.deactivate(
        db, leave_type_id, actor_id=actor.employee_id,
    )
    return LeaveTypeOut.model_validate(leave_type)


# ═════════════════════════════════════════════════════════════════════
# Balances
# ═════════════════════════════════════════════════════════════════════


async def _ensure_can_view_employee(
    db: AsyncSession, actor: Actor, employee_id: uuid.UUID,
) -> None:
    if actor.employee_id == employee_id or actor.is_hr:
        return
    if actor.has_role(UserRole.manager):
        manager_id = (
            await db.execute(
                select(Employee.reporting_manager_id).where(Employee.id == employee_id)
            )
        ).scalar()
        if manager_id == actor.employee_id:
            return
    raise ForbiddenException("You are not authorized to view this employee's balances.")


@balances_router.get("", response_model=PaginatedResponse[EmployeeBalancesOut])
async def all_employee_balances(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    department: Optional[str] = Query(None, max_length=100),
    pagination: PaginationParams = Depends(),
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    """Every employee's balances for a year, one page of employees at a time."""
    return await LeaveLedger.get_all_balances(
        db, year or _current_year(), pagination, department=department,
    )


@balances_router.post("", response_model=LeaveBalanceOut, status_code=201)
async def create_balance(
    body: BalanceCreateRequest,
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    balance = await LeaveLedger.create_balance(
        db,
        BalanceKey(body.employee_id, body.leave_type_id, body.year),
        body.allocated,
        body.carried_forward,
        actor_id=actor.employee_id,
    )
    return LeaveBalanceOut.model_validate(balance)


@balances_router.get("/me", response_model=list[LeaveBalanceOut])
async def my_balances(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveLedger.get_balances(db, actor.employee_id, year)


@balances_router.get("/employees/{employee_id}", response_model=list[LeaveBalanceOut])
async def employee_balances(
    employee_id: uuid.UUID,
    year: Optional[int] = Query(None, ge=2000, le=2100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Balances of one employee: self, their manager or HR."""
    await _ensure_can_view_employee(db, actor, employee_id)
    return await LeaveLedger.get_balances(db, employee_id, year)


@balances_router.post(
    "/employees/{employee_id}/initialize",
    response_model=list[LeaveBalanceOut],
)
async def initialize_employee_balances(
    employee_id: uuid.UUID,
    body: BalanceInitializeRequest,
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    """Create missing balances for every active policy. Returns the new rows."""
    created = await LeaveLedger.initialize(db, employee_id, body.year or _current_year())
    return [LeaveBalanceOut.model_validate(b) for b in created]


@balances_router.post("/initialize", response_model=BalanceInitializeOut)
async def initialize_all_balances(
    body: BalanceInitializeRequest,
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveLedger.initialize_all(db, body.year or _current_year())


@balances_router.patch("/{balance_id}", response_model=LeaveBalanceOut)
async def adjust_balance(
    balance_id: uuid.UUID,
    body: BalanceAdjustRequest,
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    balance = await LeaveLedger.adjust(db, balance_id, body, actor_id=actor.employee_id)
    return LeaveBalanceOut.model_validate(balance)


@balances_router.post("/employees/{employee_id}/encash", response_model=LeaveBalanceOut)
async def encash_balance(
    employee_id: uuid.UUID,
    body: BalanceEncashRequest,
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    balance = await LeaveLedger.encash(
        db,
        BalanceKey(employee_id, body.leave_type_id, body.year),
        body.days,
        actor_id=actor.employee_id,
    )
    return LeaveBalanceOut.model_validate(balance)


@balances_router.post(
    "/employees/{employee_id}/carry-forward",
    response_model=list[LeaveBalanceOut],
)
async def carry_forward_balances(
    employee_id: uuid.UUID,
    body: CarryForwardRequest,
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    """Set next year's carried-forward days from *from_year*'s remaining."""
    targets = await LeaveLedger.carry_forward(
        db, employee_id, body.from_year, actor_id=actor.employee_id,
    )
    return [LeaveBalanceOut.model_validate(b) for b in targets]


# ═════════════════════════════════════════════════════════════════════
# Leave requests
# ═════════════════════════════════════════════════════════════════════


@leaves_router.post("", response_model=LeaveRequestOut, status_code=201)
async def submit_leave(
    body: LeaveRequestCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Submit a leave request; reserves the days on the balance."""
    return await LeaveService.submit_leave(db, actor, body)


@leaves_router.get("", response_model=PaginatedResponse[LeaveRequestOut])
async def list_leaves(
    scope: str = Query("my", pattern="^(my|team|all)$"),
    employee_id: Optional[uuid.UUID] = Query(None),
    status: Optional[LeaveStatus] = Query(None),
    leave_type_id: Optional[uuid.UUID] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    pagination: PaginationParams = Depends(),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_requests(
        db,
        actor,
        pagination,
        scope=scope,
        employee_id=employee_id,
        status=status,
        leave_type_id=leave_type_id,
        from_date=from_date,
        to_date=to_date,
    )


@leaves_router.get("/pending-approvals", response_model=list[LeaveRequestOut])
async def pending_approvals(
    actor: Actor = Depends(_managers),
    db: AsyncSession = Depends(get_db),
):
    """Pending requests of the caller's direct reports."""
    return await LeaveService.get_pending_approvals(db, actor.employee_id)


@leaves_router.get("/{request_id}", response_model=LeaveRequestOut)
async def get_leave(
    request_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_request(db, request_id, actor)


@leaves_router.patch("/{request_id}", response_model=LeaveRequestOut)
async def update_leave(
    request_id: uuid.UUID,
    body: LeaveRequestUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Edit a pending request; date changes re-book the balance."""
    return await LeaveService.update_leave(db, request_id, actor, body)


@leaves_router.post("/{request_id}/approve", response_model=LeaveRequestOut)
async def approve_leave(
    request_id: uuid.UUID,
    body: LeaveApproveRequest,
    actor: Actor = Depends(_managers),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.approve_leave(db, request_id, actor, remarks=body.remarks)


@leaves_router.post("/{request_id}/reject", response_model=LeaveRequestOut)
async def reject_leave(
    request_id: uuid.UUID,
    body: LeaveRejectRequest,
    actor: Actor = Depends(_managers),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.reject_leave(
        db, request_id, actor, body.reason, comment=body.comment,
    )


@leaves_router.post("/{request_id}/cancel", response_model=LeaveRequestOut)
async def cancel_leave(
    request_id: uuid.UUID,
    body: LeaveCancelRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a pending or approved request (owner, manager or HR)."""
    return await LeaveService.cancel_leave(db, request_id, actor, reason=body.reason)


@leaves_router.post(
    "/{request_id}/comments", response_model=LeaveCommentOut, status_code=201,
)
async def add_comment(
    request_id: uuid.UUID,
    body: LeaveCommentCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.add_comment(db, request_id, actor, body.body)


# ═════════════════════════════════════════════════════════════════════
# Reports
# ═════════════════════════════════════════════════════════════════════


@reports_router.get("/balance-summary", response_model=list[LeaveTypeUtilization])
async def balance_summary(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveReportService.balance_summary(db, year or _current_year())


@reports_router.get("/status-breakdown", response_model=StatusBreakdownOut)
async def status_breakdown(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    employee_id: Optional[uuid.UUID] = Query(None),
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveReportService.status_breakdown(
        db, year or _current_year(), employee_id=employee_id,
    )


@reports_router.get("/ledger-check", response_model=LedgerCheckOut)
async def ledger_check(
    employee_id: uuid.UUID = Query(...),
    leave_type_id: uuid.UUID = Query(...),
    year: int = Query(..., ge=2000, le=2100),
    actor: Actor = Depends(_hr_only),
    db: AsyncSession = Depends(get_db),
):
    """Recompute pending/used from the requests and compare with the balance."""
    return await LeaveReportService.check_ledger(
        db, BalanceKey(employee_id, leave_type_id, year),
    )
