"""Leave type policy — create / update / deactivate / list."""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timeoff.common.audit import AuditTrail
from timeoff.common.constants import ApplicableGender
from timeoff.common.exceptions import ConflictError, NotFoundException, ValidationException
from timeoff.leave.ledger import LeaveLedger
from timeoff.leave.models import BalanceKey
from timeoff.leave.policy import LeaveTypeService
from timeoff.leave.schemas import LeaveTypeCreate, LeaveTypeUpdate
from tests.conftest import _seed_employee, _seed_leave_type


def _payload(**overrides) -> LeaveTypeCreate:
    data = dict(
        name="Casual Leave",
        yearly_allotment=Decimal("12"),
        max_consecutive_days=5,
    )
    data.update(overrides)
    return LeaveTypeCreate(**data)


class TestCreateLeaveType:

    async def test_create_defaults(self, db: AsyncSession):
        actor_id = uuid.uuid4()
        lt = await LeaveTypeService.create(db, _payload(), actor_id=actor_id)

        assert lt.is_active is True
        assert lt.created_by == actor_id
        assert lt.applicable_genders == ["all"]
        assert lt.color == "#3B82F6"
        assert lt.max_carry_forward_days == Decimal("0")

        audit = (
            await db.execute(select(AuditTrail).where(AuditTrail.entity_id == lt.id))
        ).scalars().one()
        assert audit.action == "create"
        assert audit.new_values["name"] == "Casual Leave"

    async def test_duplicate_name_conflicts(self, db: AsyncSession):
        await LeaveTypeService.create(db, _payload())
        with pytest.raises(ConflictError) as exc_info:
            await LeaveTypeService.create(db, _payload(name="casual leave"))
        assert exc_info.value.status_code == 409
        assert "name" in exc_info.value.errors

    def test_schema_rejects_bad_ranges(self):
        with pytest.raises(ValidationError):
            _payload(yearly_allotment=Decimal("-1"))
        with pytest.raises(ValidationError):
            _payload(max_consecutive_days=0)
        with pytest.raises(ValidationError):
            _payload(min_service_months=-3)
        with pytest.raises(ValidationError):
            _payload(name="   ")
        with pytest.raises(ValidationError):
            _payload(applicable_genders=[])

    def test_schema_requires_carry_forward_flag_for_cap(self):
        with pytest.raises(ValidationError):
            _payload(carry_forward_allowed=False, max_carry_forward_days=Decimal("5"))
        ok = _payload(carry_forward_allowed=True, max_carry_forward_days=Decimal("5"))
        assert ok.max_carry_forward_days == Decimal("5")

    def test_all_gender_absorbs_others(self):
        data = _payload(applicable_genders=[ApplicableGender.female, ApplicableGender.all])
        assert data.applicable_genders == [ApplicableGender.all]


class TestUpdateLeaveType:

    async def test_partial_update(self, db: AsyncSession):
        lt = await LeaveTypeService.create(db, _payload())
        updated = await LeaveTypeService.update(
            db, lt.id, LeaveTypeUpdate(max_consecutive_days=10, color="#10B981"),
        )
        assert updated.max_consecutive_days == 10
        assert updated.color == "#10B981"
        assert updated.name == "Casual Leave"

    async def test_update_rename_to_existing_conflicts(self, db: AsyncSession):
        await LeaveTypeService.create(db, _payload(name="Sick Leave"))
        lt = await LeaveTypeService.create(db, _payload())
        with pytest.raises(ConflictError):
            await LeaveTypeService.update(db, lt.id, LeaveTypeUpdate(name="Sick Leave"))

    async def test_update_checks_merged_carry_forward_rule(self, db: AsyncSession):
        lt = await LeaveTypeService.create(db, _payload())
        with pytest.raises(ValidationException) as exc_info:
            await LeaveTypeService.update(
                db, lt.id, LeaveTypeUpdate(max_carry_forward_days=Decimal("3")),
            )
        assert "max_carry_forward_days" in exc_info.value.errors

    async def test_update_does_not_touch_existing_balances(self, db: AsyncSession):
        emp = await _seed_employee(db)
        lt = await _seed_leave_type(db, yearly_allotment=Decimal("10"))
        await LeaveLedger.initialize(db, emp.id, 2026)

        await LeaveTypeService.update(
            db, lt.id, LeaveTypeUpdate(yearly_allotment=Decimal("20")),
        )

        balance = await LeaveLedger.lock_balance(db, BalanceKey(emp.id, lt.id, 2026))
        assert balance.allocated == Decimal("10")

    async def test_update_missing_type(self, db: AsyncSession):
        with pytest.raises(NotFoundException):
            await LeaveTypeService.update(db, uuid.uuid4(), LeaveTypeUpdate(color="#000000"))


class TestDeactivateAndList:

    async def test_deactivate_hides_from_default_list(self, db: AsyncSession):
        keep = await LeaveTypeService.create(db, _payload(name="Annual Leave"))
        gone = await LeaveTypeService.create(db, _payload(name="Sabbatical"))

        await LeaveTypeService.deactivate(db, gone.id)

        active = await LeaveTypeService.list_types(db)
        assert [t.id for t in active] == [keep.id]
        everything = await LeaveTypeService.list_types(db, is_active=None)
        assert {t.id for t in everything} == {keep.id, gone.id}
        inactive = await LeaveTypeService.list_types(db, is_active=False)
        assert [t.id for t in inactive] == [gone.id]

    async def test_deactivate_is_idempotent(self, db: AsyncSession):
        lt = await LeaveTypeService.create(db, _payload())
        await LeaveTypeService.deactivate(db, lt.id)
        again = await LeaveTypeService.deactivate(db, lt.id)
        assert again.is_active is False

        entries = (
            await db.execute(
                select(AuditTrail).where(
                    AuditTrail.entity_id == lt.id, AuditTrail.action == "deactivate",
                )
            )
        ).scalars().all()
        assert len(entries) == 1
