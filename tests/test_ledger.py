"""Balance ledger — primitives, admin operations, invariants, concurrency."""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timeoff.common.exceptions import (
    ConcurrentUpdateError,
    ConflictError,
    InsufficientBalance,
    InvariantViolation,
    NotFoundException,
    PolicyViolation,
    ValidationException,
)
from timeoff.common.pagination import PaginationParams
from timeoff.leave.ledger import LeaveLedger, flush_or_conflict
from timeoff.leave.models import BalanceKey, LeaveBalance
from timeoff.leave.schemas import BalanceAdjustRequest
from timeoff.leave.transitions import LedgerEffect
from tests.conftest import _seed_employee, _seed_leave_type

YEAR = 2026


def _assert_remaining_identity(balance: LeaveBalance) -> None:
    assert balance.remaining == (
        balance.allocated
        + balance.carried_forward
        - balance.used
        - balance.pending
        - balance.encashed
    )


async def _seed_account(
    db: AsyncSession,
    *,
    allotment: Decimal = Decimal("10"),
    **type_kwargs,
) -> tuple[BalanceKey, LeaveBalance]:
    emp = await _seed_employee(db)
    lt = await _seed_leave_type(db, yearly_allotment=allotment, **type_kwargs)
    balance, created = await LeaveLedger.get_or_create_balance(db, emp.id, lt, YEAR)
    assert created
    return BalanceKey(emp.id, lt.id, YEAR), balance


# ═════════════════════════════════════════════════════════════════════
# Initialization
# ═════════════════════════════════════════════════════════════════════


class TestInitialize:

    async def test_one_balance_per_active_policy(self, db: AsyncSession):
        emp = await _seed_employee(db)
        annual = await _seed_leave_type(db, name="Annual", yearly_allotment=Decimal("18"))
        sick = await _seed_leave_type(db, name="Sick", yearly_allotment=Decimal("7"))
        await _seed_leave_type(db, name="Retired", is_active=False)

        created = await LeaveLedger.initialize(db, emp.id, YEAR)

        assert {b.leave_type_id: b.allocated for b in created} == {
            annual.id: Decimal("18"),
            sick.id: Decimal("7"),
        }
        for balance in created:
            assert balance.used == balance.pending == balance.encashed == Decimal("0")
            assert balance.remaining == balance.allocated
            assert balance.version == 1

    async def test_initialize_twice_equals_once(self, db: AsyncSession):
        emp = await _seed_employee(db)
        await _seed_leave_type(db, name="Annual")
        await _seed_leave_type(db, name="Sick")

        first = await LeaveLedger.initialize(db, emp.id, YEAR)
        second = await LeaveLedger.initialize(db, emp.id, YEAR)

        assert len(first) == 2
        assert second == []
        count = (
            await db.execute(select(func.count()).select_from(LeaveBalance))
        ).scalar_one()
        assert count == 2

    async def test_initialize_does_not_reset_existing(self, db: AsyncSession):
        key, _ = await _seed_account(db)
        await LeaveLedger.reserve(db, key, Decimal("3"))

        await LeaveLedger.initialize(db, key.employee_id, YEAR)

        balance = await LeaveLedger.lock_balance(db, key)
        assert balance.pending == Decimal("3")
        assert balance.remaining == Decimal("7")

    async def test_initialize_unknown_employee(self, db: AsyncSession):
        with pytest.raises(NotFoundException):
            await LeaveLedger.initialize(db, uuid.uuid4(), YEAR)

    async def test_initialize_all_skips_inactive_employees(self, db: AsyncSession):
        await _seed_employee(db, first_name="A")
        await _seed_employee(db, first_name="B")
        await _seed_employee(db, first_name="Gone", is_active=False)
        await _seed_leave_type(db, name="Annual")

        result = await LeaveLedger.initialize_all(db, YEAR)
        assert result == {"year": YEAR, "employees_processed": 2, "balances_created": 2}

        again = await LeaveLedger.initialize_all(db, YEAR)
        assert again["balances_created"] == 0


# ═════════════════════════════════════════════════════════════════════
# Primitives
# ═════════════════════════════════════════════════════════════════════


class TestPrimitives:

    async def test_reserve_commit_release_reverse(self, db: AsyncSession):
        key, _ = await _seed_account(db)

        b = await LeaveLedger.reserve(db, key, Decimal("4"))
        assert (b.pending, b.used, b.remaining) == (Decimal("4"), Decimal("0"), Decimal("6"))

        b = await LeaveLedger.commit(db, key, Decimal("3"))
        assert (b.pending, b.used, b.remaining) == (Decimal("1"), Decimal("3"), Decimal("6"))

        b = await LeaveLedger.release(db, key, Decimal("1"))
        assert (b.pending, b.used, b.remaining) == (Decimal("0"), Decimal("3"), Decimal("7"))

        b = await LeaveLedger.reverse(db, key, Decimal("3"))
        assert (b.pending, b.used, b.remaining) == (Decimal("0"), Decimal("0"), Decimal("10"))
        _assert_remaining_identity(b)

    async def test_every_write_bumps_version(self, db: AsyncSession):
        key, balance = await _seed_account(db)
        assert balance.version == 1
        b = await LeaveLedger.reserve(db, key, Decimal("1"))
        assert b.version == 2
        b = await LeaveLedger.release(db, key, Decimal("1"))
        assert b.version == 3

    async def test_reserve_exact_remaining_allowed(self, db: AsyncSession):
        key, _ = await _seed_account(db)
        b = await LeaveLedger.reserve(db, key, Decimal("10"))
        assert b.remaining == Decimal("0")

    async def test_reserve_more_than_remaining(self, db: AsyncSession):
        key, _ = await _seed_account(db)
        await LeaveLedger.reserve(db, key, Decimal("8"))

        with pytest.raises(InsufficientBalance) as exc_info:
            await LeaveLedger.reserve(db, key, Decimal("3"))

        assert exc_info.value.remaining == Decimal("2")
        assert exc_info.value.requested == Decimal("3")
        assert exc_info.value.status_code == 409

        balance = await LeaveLedger.lock_balance(db, key)
        assert balance.pending == Decimal("8")

    async def test_reserve_missing_balance(self, db: AsyncSession):
        emp = await _seed_employee(db)
        lt = await _seed_leave_type(db)
        with pytest.raises(NotFoundException):
            await LeaveLedger.reserve(db, BalanceKey(emp.id, lt.id, YEAR), Decimal("1"))

    @pytest.mark.parametrize(
        "primitive, field",
        [
            (LeaveLedger.commit, "pending"),
            (LeaveLedger.release, "pending"),
            (LeaveLedger.reverse, "used"),
        ],
    )
    async def test_underflow_is_invariant_violation(
        self, db: AsyncSession, caplog, primitive, field,
    ):
        key, _ = await _seed_account(db)
        await LeaveLedger.reserve(db, key, Decimal("2"))

        with caplog.at_level(logging.CRITICAL, logger="timeoff.leave.ledger"):
            with pytest.raises(InvariantViolation) as exc_info:
                await primitive(db, key, Decimal("5"))

        assert exc_info.value.status_code == 500
        assert field in exc_info.value.detail
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

        # Nothing was clamped or half-applied
        balance = await LeaveLedger.lock_balance(db, key)
        assert balance.pending == Decimal("2")
        assert balance.used == Decimal("0")
        assert balance.remaining == Decimal("8")

    async def test_rebook_same_key(self, db: AsyncSession):
        key, _ = await _seed_account(db)
        await LeaveLedger.reserve(db, key, Decimal("6"))

        b = await LeaveLedger.rebook(db, key, Decimal("6"), Decimal("9"))
        assert b.pending == Decimal("9")
        assert b.remaining == Decimal("1")

        b = await LeaveLedger.rebook(db, key, Decimal("9"), Decimal("2"))
        assert b.pending == Decimal("2")
        assert b.remaining == Decimal("8")

    async def test_rebook_checks_before_mutating(self, db: AsyncSession):
        key, _ = await _seed_account(db)
        await LeaveLedger.reserve(db, key, Decimal("6"))

        with pytest.raises(InsufficientBalance) as exc_info:
            await LeaveLedger.rebook(db, key, Decimal("6"), Decimal("11"))
        assert exc_info.value.remaining == Decimal("10")

        balance = await LeaveLedger.lock_balance(db, key)
        assert balance.pending == Decimal("6")

    async def test_apply_effect_dispatches(self, db: AsyncSession):
        key, _ = await _seed_account(db)
        await LeaveLedger.apply_effect(db, LedgerEffect.reserve, key, Decimal("2"))
        b = await LeaveLedger.apply_effect(db, LedgerEffect.commit, key, Decimal("2"))
        assert b.used == Decimal("2")
        assert b.pending == Decimal("0")


# ═════════════════════════════════════════════════════════════════════
# Admin operations
# ═════════════════════════════════════════════════════════════════════


class TestAdjust:

    async def test_adjust_recomputes_remaining(self, db: AsyncSession):
        key, balance = await _seed_account(db)
        await LeaveLedger.reserve(db, key, Decimal("2"))

        b = await LeaveLedger.adjust(
            db, balance.id,
            BalanceAdjustRequest(allocated=Decimal("15"), carried_forward=Decimal("3")),
        )
        assert b.allocated == Decimal("15")
        assert b.carried_forward == Decimal("3")
        assert b.remaining == Decimal("16")
        _assert_remaining_identity(b)

    async def test_adjust_cannot_drive_remaining_negative(self, db: AsyncSession):
        key, balance = await _seed_account(db)
        await LeaveLedger.reserve(db, key, Decimal("6"))

        with pytest.raises(ValidationException) as exc_info:
            await LeaveLedger.adjust(
                db, balance.id, BalanceAdjustRequest(allocated=Decimal("4")),
            )
        assert "remaining" in exc_info.value.errors

        b = await LeaveLedger.lock_balance(db, key)
        assert b.allocated == Decimal("10")

    async def test_adjust_unknown_balance(self, db: AsyncSession):
        with pytest.raises(NotFoundException):
            await LeaveLedger.adjust(
                db, uuid.uuid4(), BalanceAdjustRequest(allocated=Decimal("1")),
            )


class TestEncash:

    async def test_encash_moves_remaining(self, db: AsyncSession):
        key, _ = await _seed_account(db, encashment_allowed=True)
        b = await LeaveLedger.encash(db, key, Decimal("4"))
        assert b.encashed == Decimal("4")
        assert b.remaining == Decimal("6")

    async def test_encash_requires_policy(self, db: AsyncSession):
        key, _ = await _seed_account(db, encashment_allowed=False)
        with pytest.raises(PolicyViolation):
            await LeaveLedger.encash(db, key, Decimal("1"))

    async def test_encash_limited_by_remaining(self, db: AsyncSession):
        key, _ = await _seed_account(db, encashment_allowed=True)
        await LeaveLedger.reserve(db, key, Decimal("8"))
        with pytest.raises(InsufficientBalance):
            await LeaveLedger.encash(db, key, Decimal("3"))


class TestCarryForward:

    async def test_capped_and_idempotent(self, db: AsyncSession):
        key, _ = await _seed_account(
            db,
            carry_forward_allowed=True,
            max_carry_forward_days=Decimal("5"),
        )
        await LeaveLedger.reserve(db, key, Decimal("2"))
        await LeaveLedger.commit(db, key, Decimal("2"))  # remaining 8

        first = await LeaveLedger.carry_forward(db, key.employee_id, YEAR)
        assert len(first) == 1
        nxt = first[0]
        assert nxt.year == YEAR + 1
        assert nxt.carried_forward == Decimal("5")
        assert nxt.allocated == Decimal("10")
        assert nxt.remaining == Decimal("15")

        second = await LeaveLedger.carry_forward(db, key.employee_id, YEAR)
        assert second[0].id == nxt.id
        assert second[0].carried_forward == Decimal("5")

    async def test_below_cap_carries_remaining(self, db: AsyncSession):
        key, _ = await _seed_account(
            db,
            carry_forward_allowed=True,
            max_carry_forward_days=Decimal("5"),
        )
        await LeaveLedger.reserve(db, key, Decimal("8"))
        await LeaveLedger.commit(db, key, Decimal("8"))  # remaining 2

        result = await LeaveLedger.carry_forward(db, key.employee_id, YEAR)
        assert result[0].carried_forward == Decimal("2")

    async def test_rerun_cannot_drive_next_year_negative(self, db: AsyncSession):
        key, _ = await _seed_account(
            db,
            carry_forward_allowed=True,
            max_carry_forward_days=Decimal("5"),
        )
        (nxt,) = await LeaveLedger.carry_forward(db, key.employee_id, YEAR)
        next_key = BalanceKey(key.employee_id, key.leave_type_id, YEAR + 1)
        assert nxt.remaining == Decimal("15")

        # Next year spends the carried days, then this year shrinks to 1
        await LeaveLedger.reserve(db, next_key, Decimal("15"))
        await LeaveLedger.commit(db, next_key, Decimal("15"))
        await LeaveLedger.reserve(db, key, Decimal("9"))
        await LeaveLedger.commit(db, key, Decimal("9"))

        with pytest.raises(ValidationException) as exc_info:
            await LeaveLedger.carry_forward(db, key.employee_id, YEAR)
        assert "remaining" in exc_info.value.errors

        b = await LeaveLedger.lock_balance(db, next_key)
        assert b.carried_forward == Decimal("5")
        assert b.used == Decimal("15")
        assert b.remaining == Decimal("0")

    async def test_rerun_lowering_within_unused_days(self, db: AsyncSession):
        key, _ = await _seed_account(
            db,
            carry_forward_allowed=True,
            max_carry_forward_days=Decimal("5"),
        )
        await LeaveLedger.carry_forward(db, key.employee_id, YEAR)
        await LeaveLedger.reserve(db, key, Decimal("7"))
        await LeaveLedger.commit(db, key, Decimal("7"))  # remaining 3

        (nxt,) = await LeaveLedger.carry_forward(db, key.employee_id, YEAR)
        assert nxt.carried_forward == Decimal("3")
        assert nxt.remaining == Decimal("13")
        _assert_remaining_identity(nxt)

    async def test_disabled_policy_is_skipped(self, db: AsyncSession):
        key, _ = await _seed_account(db, carry_forward_allowed=False)
        assert await LeaveLedger.carry_forward(db, key.employee_id, YEAR) == []
        assert await LeaveLedger.lock_balance(
            db, BalanceKey(key.employee_id, key.leave_type_id, YEAR + 1),
        ) is None


class TestGetBalances:

    async def test_lists_year_with_leave_type(self, db: AsyncSession):
        emp = await _seed_employee(db)
        await _seed_leave_type(db, name="Annual")
        await _seed_leave_type(db, name="Sick")
        await LeaveLedger.initialize(db, emp.id, YEAR)
        await LeaveLedger.initialize(db, emp.id, YEAR + 1)

        balances = await LeaveLedger.get_balances(db, emp.id, YEAR)
        assert [b.leave_type.name for b in balances] == ["Annual", "Sick"]
        assert all(b.year == YEAR for b in balances)


class TestGetAllBalances:

    async def test_groups_by_employee_and_filters_department(self, db: AsyncSession):
        eng_a = await _seed_employee(db, first_name="Ada")
        eng_b = await _seed_employee(db, first_name="Bo")
        sales = await _seed_employee(db, first_name="Cy", department="Sales")
        await _seed_leave_type(db, name="Annual")
        await _seed_leave_type(db, name="Sick")
        await LeaveLedger.initialize(db, eng_a.id, YEAR)
        await LeaveLedger.initialize(db, eng_a.id, YEAR + 1)
        await LeaveLedger.initialize(db, sales.id, YEAR)

        page = await LeaveLedger.get_all_balances(
            db, YEAR, PaginationParams(page=1, page_size=50),
        )
        assert page.meta.total == 3
        rows = {row.employee_id: row for row in page.data}
        assert [b.leave_type.name for b in rows[eng_a.id].balances] == ["Annual", "Sick"]
        assert all(b.year == YEAR for b in rows[eng_a.id].balances)
        assert rows[eng_b.id].balances == []
        assert rows[sales.id].department == "Sales"

        sales_page = await LeaveLedger.get_all_balances(
            db, YEAR, PaginationParams(page=1, page_size=50), department="Sales",
        )
        assert [row.employee_id for row in sales_page.data] == [sales.id]
        assert len(sales_page.data[0].balances) == 2

    async def test_pages_over_employees(self, db: AsyncSession):
        for name in ("A", "B", "C"):
            await _seed_employee(db, first_name=name)

        page = await LeaveLedger.get_all_balances(
            db, YEAR, PaginationParams(page=1, page_size=2),
        )
        assert len(page.data) == 2
        assert page.meta.total == 3
        assert page.meta.has_next is True


class TestCreateBalance:

    async def test_custom_amounts_on_inactive_type(self, db: AsyncSession):
        emp = await _seed_employee(db)
        lt = await _seed_leave_type(db, yearly_allotment=Decimal("10"), is_active=False)
        key = BalanceKey(emp.id, lt.id, YEAR)

        b = await LeaveLedger.create_balance(db, key, Decimal("3.5"), Decimal("2"))
        assert b.allocated == Decimal("3.5")
        assert b.carried_forward == Decimal("2")
        assert b.remaining == Decimal("5.5")
        assert b.version == 1
        _assert_remaining_identity(b)

        # Initialize only covers active policies, so nothing more appears
        assert await LeaveLedger.initialize(db, emp.id, YEAR) == []

    async def test_existing_key_is_conflict(self, db: AsyncSession):
        key, _ = await _seed_account(db)
        with pytest.raises(ConflictError) as exc_info:
            await LeaveLedger.create_balance(db, key, Decimal("20"))
        assert exc_info.value.status_code == 409

        b = await LeaveLedger.lock_balance(db, key)
        assert b.allocated == Decimal("10")

    async def test_unknown_employee_or_type(self, db: AsyncSession):
        emp = await _seed_employee(db)
        lt = await _seed_leave_type(db)
        with pytest.raises(NotFoundException):
            await LeaveLedger.create_balance(
                db, BalanceKey(uuid.uuid4(), lt.id, YEAR), Decimal("1"),
            )
        with pytest.raises(NotFoundException):
            await LeaveLedger.create_balance(
                db, BalanceKey(emp.id, uuid.uuid4(), YEAR), Decimal("1"),
            )

    async def test_negative_amounts_refused(self, db: AsyncSession):
        emp = await _seed_employee(db)
        lt = await _seed_leave_type(db)
        with pytest.raises(ValidationException) as exc_info:
            await LeaveLedger.create_balance(
                db, BalanceKey(emp.id, lt.id, YEAR), Decimal("-1"),
            )
        assert "allocated" in exc_info.value.errors


# ═════════════════════════════════════════════════════════════════════
# Optimistic concurrency
# ═════════════════════════════════════════════════════════════════════


class TestLostUpdateDetection:

    async def test_stale_version_raises_concurrent_update(self, db: AsyncSession):
        key, balance = await _seed_account(db)
        balance_id = balance.id
        await db.commit()

        # Two independent sessions on the same engine
        factory = async_sessionmaker(db.bind, expire_on_commit=False)
        s1 = factory()
        s2 = factory()
        try:
            b1 = await s1.get(LeaveBalance, balance_id)
            await s1.commit()
            b2 = await s2.get(LeaveBalance, balance_id)
            await s2.commit()

            # Writer 1 wins
            b1.pending = Decimal("3")
            b1.recompute_remaining()
            await s1.commit()

            # Writer 2 still holds version 1
            b2.pending = Decimal("4")
            b2.recompute_remaining()
            with pytest.raises(ConcurrentUpdateError) as exc_info:
                await flush_or_conflict(s2, "LeaveBalance", balance_id)
            assert exc_info.value.status_code == 409
            await s2.rollback()
        finally:
            await s1.close()
            await s2.close()

        fresh = await LeaveLedger.lock_balance(db, key)
        assert fresh.pending == Decimal("3")
        assert fresh.version == 2

    async def test_racing_reservations_admit_at_most_remaining(self, db: AsyncSession):
        key, balance = await _seed_account(db)
        await LeaveLedger.reserve(db, key, Decimal("4"))
        balance_id = balance.id
        await db.commit()

        factory = async_sessionmaker(db.bind, expire_on_commit=False)
        s1 = factory()
        s2 = factory()
        try:
            # Session B sees 6 free days before session A takes them
            seen = await s2.get(LeaveBalance, balance_id)
            assert seen.remaining == Decimal("6")
            await s2.commit()

            await LeaveLedger.reserve(s1, key, Decimal("6"))
            await s1.commit()

            with pytest.raises((InsufficientBalance, ConcurrentUpdateError)):
                await LeaveLedger.reserve(s2, key, Decimal("6"))
            await s2.rollback()
        finally:
            await s1.close()
            await s2.close()

        fresh = await LeaveLedger.lock_balance(db, key)
        assert fresh.pending == Decimal("10")
        assert fresh.remaining == Decimal("0")
        _assert_remaining_identity(fresh)
