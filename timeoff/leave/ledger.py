"""Leave balance ledger — one account per (employee, leave type, year).

Every primitive follows the same shape:

  1. ``SELECT … FOR UPDATE`` the balance row (fresh values, not the identity map)
  2. check the precondition and raise before touching any field
  3. mutate, recompute ``remaining`` and flush under the version counter

A lost update (another writer bumped ``version`` first) surfaces as
``ConcurrentUpdateError``; the caller's transaction is rolled back by
``get_db`` and the client may retry.

Precondition failures on commit/release/reverse mean the ledger and the
requests disagree. They are logged at CRITICAL and raised as
``InvariantViolation``; values are never clamped.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from timeoff.common.audit import create_audit_entry
from timeoff.common.constants import EventType
from timeoff.common.events import queue_event
from timeoff.common.exceptions import (
    ConcurrentUpdateError,
    ConflictError,
    InsufficientBalance,
    InvariantViolation,
    NotFoundException,
    PolicyViolation,
    ValidationException,
)
from timeoff.common.pagination import PaginatedResponse, PaginationParams, paginate
from timeoff.core_hr.models import Employee
from timeoff.leave.models import ZERO, BalanceKey, LeaveBalance, LeaveType
from timeoff.leave.schemas import BalanceAdjustRequest, EmployeeBalancesOut, LeaveBalanceOut
from timeoff.leave.transitions import LedgerEffect

logger = logging.getLogger(__name__)

ADJUSTABLE_FIELDS = ("allocated", "carried_forward", "encashed")


def balance_snapshot(balance: LeaveBalance) -> dict[str, Any]:
    return {
        "balance_id": str(balance.id),
        "employee_id": str(balance.employee_id),
        "leave_type_id": str(balance.leave_type_id),
        "year": balance.year,
        "allocated": str(balance.allocated),
        "used": str(balance.used),
        "pending": str(balance.pending),
        "carried_forward": str(balance.carried_forward),
        "encashed": str(balance.encashed),
        "remaining": str(balance.remaining),
    }


async def flush_or_conflict(
    db: AsyncSession,
    entity_type: str,
    entity_id: Any,
) -> None:
    """Flush pending writes; a version-counter mismatch becomes a 409."""
    try:
        await db.flush()
    except StaleDataError as exc:
        logger.warning("Lost update on %s %s: %s", entity_type, entity_id, exc)
        raise ConcurrentUpdateError(entity_type, entity_id) from exc


def _invariant(key: BalanceKey, primitive: str, field: str, have: Decimal, days: Decimal) -> InvariantViolation:
    logger.critical(
        "Ledger invariant violated: %s of %s days on %s/%s/%s but %s is only %s",
        primitive, days, key.employee_id, key.leave_type_id, key.year, field, have,
    )
    return InvariantViolation(
        f"Cannot {primitive} {days} day(s) on balance "
        f"{key.employee_id}/{key.leave_type_id}/{key.year}: {field} is {have}."
    )


class LeaveLedger:
    """Atomic balance primitives plus admin operations on balances."""

    # ─────────────────────────────────────────────────────────────────
    # Locking / lookup
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def lock_balance(db: AsyncSession, key: BalanceKey) -> Optional[LeaveBalance]:
        """Load the balance for *key* with a row lock, refreshing stale state."""
        result = await db.execute(
            select(LeaveBalance)
            .where(
                LeaveBalance.employee_id == key.employee_id,
                LeaveBalance.leave_type_id == key.leave_type_id,
                LeaveBalance.year == key.year,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def _require_balance(db: AsyncSession, key: BalanceKey) -> LeaveBalance:
        balance = await LeaveLedger.lock_balance(db, key)
        if balance is None:
            raise NotFoundException(
                "LeaveBalance", f"{key.employee_id}/{key.leave_type_id}/{key.year}",
            )
        return balance

    @staticmethod
    async def get_or_create_balance(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type: LeaveType,
        year: int,
    ) -> tuple[LeaveBalance, bool]:
        """Return ``(balance, created)``, allocating from the policy on first use.

        The insert runs inside a SAVEPOINT: if a concurrent transaction created
        the same key first, the unique constraint fires and the winner's row is
        locked and returned instead.
        """
        key = BalanceKey(employee_id, leave_type.id, year)
        balance = await LeaveLedger.lock_balance(db, key)
        if balance is not None:
            return balance, False

        try:
            async with db.begin_nested():
                balance = LeaveBalance(
                    employee_id=employee_id,
                    leave_type_id=leave_type.id,
                    leave_type=leave_type,
                    year=year,
                    allocated=Decimal(leave_type.yearly_allotment),
                )
                balance.recompute_remaining()
                db.add(balance)
        except IntegrityError:
            logger.info("Balance %s/%s/%s created concurrently; reusing", *key)
            balance = await LeaveLedger._require_balance(db, key)
            return balance, False

        logger.info(
            "Balance %s/%s/%s created with %s day(s)",
            employee_id, leave_type.id, year, balance.allocated,
        )
        return balance, True

    # ─────────────────────────────────────────────────────────────────
    # Initialization
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def initialize(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: int,
    ) -> list[LeaveBalance]:
        """Create one balance per active policy that has none for *year*.

        Idempotent: running it twice leaves the same rows as running it once.
        Returns only the balances created by this call.
        """
        emp = (
            await db.execute(select(Employee.id).where(Employee.id == employee_id))
        ).scalar()
        if emp is None:
            raise NotFoundException("Employee", str(employee_id))

        types = (
            await db.execute(
                select(LeaveType)
                .where(LeaveType.is_active.is_(True))
                .order_by(LeaveType.name)
            )
        ).scalars().all()

        created: list[LeaveBalance] = []
        for leave_type in types:
            balance, was_created = await LeaveLedger.get_or_create_balance(
                db, employee_id, leave_type, year,
            )
            if was_created:
                created.append(balance)
        return created

    @staticmethod
    async def initialize_all(db: AsyncSession, year: int) -> dict[str, int]:
        """``initialize`` every active employee for *year*."""
        employee_ids = (
            await db.execute(
                select(Employee.id)
                .where(Employee.is_active.is_(True))
                .order_by(Employee.employee_code)
            )
        ).scalars().all()

        created = 0
        for employee_id in employee_ids:
            created += len(await LeaveLedger.initialize(db, employee_id, year))

        logger.info(
            "Initialized %d balance(s) for %d employee(s) in %d",
            created, len(employee_ids), year,
        )
        return {
            "year": year,
            "employees_processed": len(employee_ids),
            "balances_created": created,
        }

    @staticmethod
    async def create_balance(
        db: AsyncSession,
        key: BalanceKey,
        allocated: Decimal,
        carried_forward: Decimal = ZERO,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeaveBalance:
        """Open one balance with explicit amounts instead of the policy allotment.

        Works for inactive policies too. An existing balance for *key* is a
        conflict; use ``adjust`` to change it.
        """
        errors = {
            field: ["Must be zero or greater."]
            for field, value in (("allocated", allocated), ("carried_forward", carried_forward))
            if value < 0
        }
        if errors:
            raise ValidationException(errors)

        emp = (
            await db.execute(select(Employee.id).where(Employee.id == key.employee_id))
        ).scalar()
        if emp is None:
            raise NotFoundException("Employee", str(key.employee_id))
        leave_type = (
            await db.execute(select(LeaveType).where(LeaveType.id == key.leave_type_id))
        ).scalars().first()
        if leave_type is None:
            raise NotFoundException("LeaveType", str(key.leave_type_id))

        label = f"{key.employee_id}/{key.leave_type_id}/{key.year}"
        if await LeaveLedger.lock_balance(db, key) is not None:
            raise ConflictError("balance", label)

        try:
            async with db.begin_nested():
                balance = LeaveBalance(
                    employee_id=key.employee_id,
                    leave_type_id=leave_type.id,
                    leave_type=leave_type,
                    year=key.year,
                    allocated=allocated,
                    carried_forward=carried_forward,
                )
                balance.recompute_remaining()
                db.add(balance)
        except IntegrityError as exc:
            raise ConflictError("balance", label) from exc

        await create_audit_entry(
            db,
            action="create",
            entity_type="leave_balance",
            entity_id=balance.id,
            actor_id=actor_id,
            new_values={
                "allocated": str(allocated),
                "carried_forward": str(carried_forward),
                "year": key.year,
            },
        )
        queue_event(
            db,
            EventType.balance_created,
            entity_type="leave_balance",
            entity_id=balance.id,
            actor_id=actor_id,
            snapshot=balance_snapshot(balance),
        )
        logger.info(
            "Balance %s created by %s with %s allocated, %s carried forward",
            label, actor_id, allocated, carried_forward,
        )
        return balance

    # ─────────────────────────────────────────────────────────────────
    # Primitives
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def reserve(db: AsyncSession, key: BalanceKey, days: Decimal) -> LeaveBalance:
        """Hold *days* against the balance while a request is pending."""
        balance = await LeaveLedger._require_balance(db, key)
        remaining = balance.recompute_remaining()
        if remaining < days:
            logger.warning(
                "Reserve of %s day(s) refused on %s/%s/%s: remaining %s",
                days, *key, remaining,
            )
            raise InsufficientBalance(remaining=remaining, requested=days)

        balance.pending = Decimal(balance.pending) + days
        balance.recompute_remaining()
        await flush_or_conflict(db, "LeaveBalance", balance.id)
        logger.info("Reserved %s day(s) on %s/%s/%s", days, *key)
        return balance

    @staticmethod
    async def commit(db: AsyncSession, key: BalanceKey, days: Decimal) -> LeaveBalance:
        """Move *days* from pending to used on approval."""
        balance = await LeaveLedger._require_balance(db, key)
        if Decimal(balance.pending) < days:
            raise _invariant(key, "commit", "pending", balance.pending, days)

        balance.pending = Decimal(balance.pending) - days
        balance.used = Decimal(balance.used) + days
        balance.recompute_remaining()
        await flush_or_conflict(db, "LeaveBalance", balance.id)
        logger.info("Committed %s day(s) on %s/%s/%s", days, *key)
        return balance

    @staticmethod
    async def release(db: AsyncSession, key: BalanceKey, days: Decimal) -> LeaveBalance:
        """Return held days to the balance (reject / cancel while pending)."""
        balance = await LeaveLedger._require_balance(db, key)
        if Decimal(balance.pending) < days:
            raise _invariant(key, "release", "pending", balance.pending, days)

        balance.pending = Decimal(balance.pending) - days
        balance.recompute_remaining()
        await flush_or_conflict(db, "LeaveBalance", balance.id)
        logger.info("Released %s day(s) on %s/%s/%s", days, *key)
        return balance

    @staticmethod
    async def reverse(db: AsyncSession, key: BalanceKey, days: Decimal) -> LeaveBalance:
        """Give back days that were already used (cancel after approval)."""
        balance = await LeaveLedger._require_balance(db, key)
        if Decimal(balance.used) < days:
            raise _invariant(key, "reverse", "used", balance.used, days)

        balance.used = Decimal(balance.used) - days
        balance.recompute_remaining()
        await flush_or_conflict(db, "LeaveBalance", balance.id)
        logger.info("Reversed %s day(s) on %s/%s/%s", days, *key)
        return balance

    @staticmethod
    async def rebook(
        db: AsyncSession,
        key: BalanceKey,
        old_days: Decimal,
        new_days: Decimal,
    ) -> LeaveBalance:
        """Release *old_days* and reserve *new_days* on one key, atomically."""
        balance = await LeaveLedger._require_balance(db, key)
        if Decimal(balance.pending) < old_days:
            raise _invariant(key, "rebook", "pending", balance.pending, old_days)

        available = balance.recompute_remaining() + old_days
        if available < new_days:
            logger.warning(
                "Rebook %s -> %s day(s) refused on %s/%s/%s: available %s",
                old_days, new_days, *key, available,
            )
            raise InsufficientBalance(remaining=available, requested=new_days)

        balance.pending = Decimal(balance.pending) - old_days + new_days
        balance.recompute_remaining()
        await flush_or_conflict(db, "LeaveBalance", balance.id)
        logger.info("Rebooked %s -> %s day(s) on %s/%s/%s", old_days, new_days, *key)
        return balance

    @staticmethod
    async def apply_effect(
        db: AsyncSession,
        effect: LedgerEffect,
        key: BalanceKey,
        days: Decimal,
    ) -> LeaveBalance:
        """Dispatch a transition's ledger effect to the matching primitive."""
        primitive = {
            LedgerEffect.reserve: LeaveLedger.reserve,
            LedgerEffect.commit: LeaveLedger.commit,
            LedgerEffect.release: LeaveLedger.release,
            LedgerEffect.reverse: LeaveLedger.reverse,
        }[effect]
        return await primitive(db, key, days)

    # ─────────────────────────────────────────────────────────────────
    # Admin operations
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def adjust(
        db: AsyncSession,
        balance_id: uuid.UUID,
        data: BalanceAdjustRequest,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeaveBalance:
        """HR correction of allocated / carried_forward / encashed.

        ``used`` and ``pending`` are owned by the request lifecycle and cannot
        be edited here. A correction that would leave ``remaining`` negative
        is refused.
        """
        row = (
            await db.execute(
                select(LeaveBalance.employee_id, LeaveBalance.leave_type_id, LeaveBalance.year)
                .where(LeaveBalance.id == balance_id)
            )
        ).first()
        if row is None:
            raise NotFoundException("LeaveBalance", str(balance_id))
        balance = await LeaveLedger._require_balance(db, BalanceKey(*row))

        changes = {
            field: getattr(data, field)
            for field in ADJUSTABLE_FIELDS
            if getattr(data, field) is not None
        }
        errors = {
            field: ["Must be zero or greater."]
            for field, value in changes.items()
            if value < 0
        }
        if errors:
            raise ValidationException(errors)

        old_values = {field: str(getattr(balance, field)) for field in changes}
        projected = dict(
            allocated=Decimal(balance.allocated),
            carried_forward=Decimal(balance.carried_forward),
            encashed=Decimal(balance.encashed),
        )
        projected.update(changes)
        new_remaining = (
            projected["allocated"]
            + projected["carried_forward"]
            - Decimal(balance.used)
            - Decimal(balance.pending)
            - projected["encashed"]
        )
        if new_remaining < 0:
            raise ValidationException({
                "remaining": [
                    f"Adjustment would leave remaining at {new_remaining}; "
                    f"{balance.used} day(s) used and {balance.pending} pending."
                ]
            })

        for field, value in changes.items():
            setattr(balance, field, value)
        balance.recompute_remaining()
        await flush_or_conflict(db, "LeaveBalance", balance.id)

        await create_audit_entry(
            db,
            action="adjust",
            entity_type="leave_balance",
            entity_id=balance.id,
            actor_id=actor_id,
            old_values=old_values,
            new_values={
                **{field: str(value) for field, value in changes.items()},
                "remaining": str(balance.remaining),
                "reason": data.reason,
            },
        )
        queue_event(
            db,
            EventType.balance_adjusted,
            entity_type="leave_balance",
            entity_id=balance.id,
            actor_id=actor_id,
            snapshot={**balance_snapshot(balance), "reason": data.reason},
        )
        logger.info("Balance %s adjusted: %s", balance.id, old_values)
        return balance

    @staticmethod
    async def encash(
        db: AsyncSession,
        key: BalanceKey,
        days: Decimal,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeaveBalance:
        """Convert *days* of remaining balance to encashed days."""
        if days <= 0:
            raise ValidationException({"days": ["Must be greater than zero."]})

        leave_type = (
            await db.execute(select(LeaveType).where(LeaveType.id == key.leave_type_id))
        ).scalars().first()
        if leave_type is None:
            raise NotFoundException("LeaveType", str(key.leave_type_id))
        if not leave_type.encashment_allowed:
            raise PolicyViolation(
                {"leave_type_id": [f"{leave_type.name} does not allow encashment."]}
            )

        balance = await LeaveLedger._require_balance(db, key)
        remaining = balance.recompute_remaining()
        if remaining < days:
            raise InsufficientBalance(remaining=remaining, requested=days)

        balance.encashed = Decimal(balance.encashed) + days
        balance.recompute_remaining()
        await flush_or_conflict(db, "LeaveBalance", balance.id)

        await create_audit_entry(
            db,
            action="encash",
            entity_type="leave_balance",
            entity_id=balance.id,
            actor_id=actor_id,
            new_values={"days": str(days), "encashed": str(balance.encashed)},
        )
        queue_event(
            db,
            EventType.balance_encashed,
            entity_type="leave_balance",
            entity_id=balance.id,
            actor_id=actor_id,
            snapshot={**balance_snapshot(balance), "days": str(days)},
        )
        logger.info("Encashed %s day(s) on %s/%s/%s", days, *key)
        return balance

    @staticmethod
    async def carry_forward(
        db: AsyncSession,
        employee_id: uuid.UUID,
        from_year: int,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> list[LeaveBalance]:
        """Set next year's ``carried_forward`` from this year's remaining.

        Only policies with carry forward enabled take part; the amount is
        capped at ``max_carry_forward_days``. Re-running sets the same value
        again rather than adding to it. A re-run that would lower the carried
        days below what next year has already consumed is refused.
        """
        emp = (
            await db.execute(select(Employee.id).where(Employee.id == employee_id))
        ).scalar()
        if emp is None:
            raise NotFoundException("Employee", str(employee_id))

        sources = (
            await db.execute(
                select(LeaveBalance)
                .join(LeaveType, LeaveBalance.leave_type_id == LeaveType.id)
                .where(
                    LeaveBalance.employee_id == employee_id,
                    LeaveBalance.year == from_year,
                    LeaveType.carry_forward_allowed.is_(True),
                )
                .options(selectinload(LeaveBalance.leave_type))
                .order_by(LeaveType.name)
            )
        ).scalars().all()

        results: list[LeaveBalance] = []
        for source in sources:
            leave_type = source.leave_type
            carried = min(
                max(source.recompute_remaining(), ZERO),
                Decimal(leave_type.max_carry_forward_days),
            )
            target, _ = await LeaveLedger.get_or_create_balance(
                db, employee_id, leave_type, from_year + 1,
            )
            old_value = Decimal(target.carried_forward)
            if old_value != carried:
                projected = (
                    Decimal(target.allocated)
                    + carried
                    - Decimal(target.used)
                    - Decimal(target.pending)
                    - Decimal(target.encashed)
                )
                if projected < 0:
                    logger.warning(
                        "Carry forward of %s refused for %s in %d: remaining would be %s",
                        leave_type.name, employee_id, from_year + 1, projected,
                    )
                    raise ValidationException({
                        "remaining": [
                            f"Carrying {carried} day(s) of {leave_type.name} into "
                            f"{from_year + 1} would leave remaining at {projected}; "
                            f"{target.used} day(s) used and {target.pending} pending."
                        ]
                    })
                target.carried_forward = carried
                target.recompute_remaining()
                await flush_or_conflict(db, "LeaveBalance", target.id)

                await create_audit_entry(
                    db,
                    action="carry_forward",
                    entity_type="leave_balance",
                    entity_id=target.id,
                    actor_id=actor_id,
                    old_values={"carried_forward": str(old_value)},
                    new_values={
                        "carried_forward": str(carried),
                        "from_year": from_year,
                    },
                )
                queue_event(
                    db,
                    EventType.balance_carried_forward,
                    entity_type="leave_balance",
                    entity_id=target.id,
                    actor_id=actor_id,
                    snapshot={**balance_snapshot(target), "from_year": from_year},
                )
                logger.info(
                    "Carried forward %s day(s) of %s into %d for %s",
                    carried, leave_type.name, from_year + 1, employee_id,
                )
            results.append(target)
        return results

    # ─────────────────────────────────────────────────────────────────
    # Read
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_balances(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: Optional[int] = None,
    ) -> list[LeaveBalanceOut]:
        """All balances of an employee for *year* (default: current year)."""
        target_year = year or date.today().year

        emp = (
            await db.execute(select(Employee.id).where(Employee.id == employee_id))
        ).scalar()
        if emp is None:
            raise NotFoundException("Employee", str(employee_id))

        result = await db.execute(
            select(LeaveBalance)
            .join(LeaveType, LeaveBalance.leave_type_id == LeaveType.id)
            .where(
                LeaveBalance.employee_id == employee_id,
                LeaveBalance.year == target_year,
            )
            .options(selectinload(LeaveBalance.leave_type))
            .order_by(LeaveType.name)
        )
        return [LeaveBalanceOut.model_validate(b) for b in result.scalars().all()]

    @staticmethod
    async def get_all_balances(
        db: AsyncSession,
        year: int,
        pagination: PaginationParams,
        *,
        department: Optional[str] = None,
    ) -> PaginatedResponse[EmployeeBalancesOut]:
        """HR view: one page of employees, each with their balances for *year*.

        Employees without balances for *year* are still listed, with an
        empty ``balances`` list.
        """
        query = select(Employee).order_by(Employee.employee_code)
        if department:
            query = query.where(Employee.department == department)

        page = await paginate(db, query, pagination)
        employee_ids = [emp.id for emp in page.data]

        by_employee: dict[uuid.UUID, list[LeaveBalanceOut]] = {
            emp_id: [] for emp_id in employee_ids
        }
        if employee_ids:
            result = await db.execute(
                select(LeaveBalance)
                .join(LeaveType, LeaveBalance.leave_type_id == LeaveType.id)
                .where(
                    LeaveBalance.employee_id.in_(employee_ids),
                    LeaveBalance.year == year,
                )
                .options(selectinload(LeaveBalance.leave_type))
                .order_by(LeaveType.name)
            )
            for balance in result.scalars().all():
                by_employee[balance.employee_id].append(
                    LeaveBalanceOut.model_validate(balance)
                )

        return PaginatedResponse(
            data=[
                EmployeeBalancesOut(
                    employee_id=emp.id,
                    employee_code=emp.employee_code,
                    name=emp.display_name or f"{emp.first_name} {emp.last_name}",
                    department=emp.department,
                    balances=by_employee[emp.id],
                )
                for emp in page.data
            ],
            meta=page.meta,
        )
