"""Read-only leave reports: utilization per type, status breakdown and a
ledger consistency check that recomputes balances from the requests."""

from __future__ import annotations

import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from timeoff.common.constants import LeaveStatus
from timeoff.leave.models import ZERO, BalanceKey, LeaveBalance, LeaveRequest, LeaveType
from timeoff.leave.schemas import (
    LedgerCheckOut,
    LeaveTypeUtilization,
    StatusBreakdownOut,
)

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else ZERO


class LeaveReportService:

    @staticmethod
    async def balance_summary(db: AsyncSession, year: int) -> list[LeaveTypeUtilization]:
        """Per leave type totals for *year*; utilization = used / allocated × 100."""

        result = await db.execute(
            select(
                LeaveType.id,
                LeaveType.name,
                LeaveType.color,
                func.count(func.distinct(LeaveBalance.employee_id)),
                func.coalesce(func.sum(LeaveBalance.allocated), 0),
                func.coalesce(func.sum(LeaveBalance.carried_forward), 0),
                func.coalesce(func.sum(LeaveBalance.used), 0),
                func.coalesce(func.sum(LeaveBalance.pending), 0),
                func.coalesce(func.sum(LeaveBalance.encashed), 0),
                func.coalesce(func.sum(LeaveBalance.remaining), 0),
            )
            .join(LeaveBalance, LeaveBalance.leave_type_id == LeaveType.id)
            .where(LeaveBalance.year == year)
            .group_by(LeaveType.id, LeaveType.name, LeaveType.color)
            .order_by(LeaveType.name)
        )

        rows: list[LeaveTypeUtilization] = []
        for (
            type_id, name, color, employees,
            allocated, carried, used, pending, encashed, remaining,
        ) in result.all():
            allocated, used = _dec(allocated), _dec(used)
            utilization = (
                (used / allocated * 100).quantize(_CENT, rounding=ROUND_HALF_UP)
                if allocated > 0 else ZERO
            )
            rows.append(
                LeaveTypeUtilization(
                    leave_type_id=type_id,
                    leave_type_name=name,
                    color=color,
                    employee_count=employees,
                    total_allocated=allocated,
                    total_carried_forward=_dec(carried),
                    total_used=used,
                    total_pending=_dec(pending),
                    total_encashed=_dec(encashed),
                    total_remaining=_dec(remaining),
                    utilization_percentage=utilization,
                )
            )
        return rows

    @staticmethod
    async def status_breakdown(
        db: AsyncSession,
        year: int,
        *,
        employee_id: Optional[uuid.UUID] = None,
    ) -> StatusBreakdownOut:
        """Request counts and day totals per status for one ledger year."""

        query = (
            select(
                LeaveRequest.status,
                func.count(LeaveRequest.id),
                func.coalesce(func.sum(LeaveRequest.total_days), 0),
            )
            .where(LeaveRequest.balance_year == year)
            .group_by(LeaveRequest.status)
        )
        if employee_id is not None:
            query = query.where(LeaveRequest.employee_id == employee_id)

        counts = {status: 0 for status in LeaveStatus}
        days = {status: ZERO for status in LeaveStatus}
        for status, count, total in (await db.execute(query)).all():
            counts[status] = count
            days[status] = _dec(total)

        return StatusBreakdownOut(
            year=year,
            employee_id=employee_id,
            counts=counts,
            days=days,
            total_requests=sum(counts.values()),
        )

    @staticmethod
    async def check_ledger(db: AsyncSession, key: BalanceKey) -> LedgerCheckOut:
        """Compare a balance with the sums over its pending / approved requests."""

        sums = dict(
            (
                await db.execute(
                    select(
                        LeaveRequest.status,
                        func.coalesce(func.sum(LeaveRequest.total_days), 0),
                    )
                    .where(
                        LeaveRequest.employee_id == key.employee_id,
                        LeaveRequest.leave_type_id == key.leave_type_id,
                        LeaveRequest.balance_year == key.year,
                        LeaveRequest.status.in_(
                            [LeaveStatus.pending, LeaveStatus.approved]
                        ),
                    )
                    .group_by(LeaveRequest.status)
                )
            ).all()
        )
        expected_pending = _dec(sums.get(LeaveStatus.pending))
        expected_used = _dec(sums.get(LeaveStatus.approved))

        balance = (
            await db.execute(
                select(LeaveBalance).where(
                    LeaveBalance.employee_id == key.employee_id,
                    LeaveBalance.leave_type_id == key.leave_type_id,
                    LeaveBalance.year == key.year,
                )
            )
        ).scalars().first()

        if balance is None:
            consistent = expected_pending == 0 and expected_used == 0
            return LedgerCheckOut(
                employee_id=key.employee_id,
                leave_type_id=key.leave_type_id,
                year=key.year,
                balance_found=False,
                recorded_pending=ZERO,
                expected_pending=expected_pending,
                recorded_used=ZERO,
                expected_used=expected_used,
                recorded_remaining=ZERO,
                expected_remaining=ZERO,
                consistent=consistent,
            )

        expected_remaining = (
            _dec(balance.allocated)
            + _dec(balance.carried_forward)
            - expected_used
            - expected_pending
            - _dec(balance.encashed)
        )
        recorded_pending = _dec(balance.pending)
        recorded_used = _dec(balance.used)
        recorded_remaining = _dec(balance.remaining)
        consistent = (
            recorded_pending == expected_pending
            and recorded_used == expected_used
            and recorded_remaining == expected_remaining
        )
        if not consistent:
            logger.error(
                "Ledger mismatch on %s/%s/%s: pending %s vs %s, used %s vs %s, "
                "remaining %s vs %s",
                *key,
                recorded_pending, expected_pending,
                recorded_used, expected_used,
                recorded_remaining, expected_remaining,
            )

        return LedgerCheckOut(
            employee_id=key.employee_id,
            leave_type_id=key.leave_type_id,
            year=key.year,
            balance_found=True,
            recorded_pending=recorded_pending,
            expected_pending=expected_pending,
            recorded_used=recorded_used,
            expected_used=expected_used,
            recorded_remaining=recorded_remaining,
            expected_remaining=expected_remaining,
            consistent=consistent,
        )
