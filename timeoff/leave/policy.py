"""Leave type policy service — category configuration CRUD.

Policies are never hard-deleted: deactivation hides a type from new
submissions while existing balances and requests keep referring to it.
Editing a policy never rewrites balances that were already allocated.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from timeoff.common.audit import create_audit_entry
from timeoff.common.exceptions import ConflictError, NotFoundException, ValidationException
from timeoff.leave.models import LeaveType
from timeoff.leave.schemas import LeaveTypeCreate, LeaveTypeUpdate

logger = logging.getLogger(__name__)


def _validate_policy(lt: LeaveType) -> None:
    """Cross-field rules checked on the merged (post-update) state."""
    errors: dict[str, list[str]] = {}
    if Decimal(lt.yearly_allotment) < 0:
        errors["yearly_allotment"] = ["Must be zero or greater."]
    if lt.max_consecutive_days < 1:
        errors["max_consecutive_days"] = ["Must be at least 1."]
    if Decimal(lt.max_carry_forward_days) < 0:
        errors["max_carry_forward_days"] = ["Must be zero or greater."]
    elif not lt.carry_forward_allowed and Decimal(lt.max_carry_forward_days) > 0:
        errors["max_carry_forward_days"] = [
            "Must be 0 when carry forward is not allowed."
        ]
    if lt.min_service_months < 0:
        errors["min_service_months"] = ["Must be zero or greater."]
    if not lt.applicable_genders:
        errors["applicable_genders"] = ["At least one applicable gender is required."]
    if errors:
        raise ValidationException(errors)


class LeaveTypeService:
    """Async operations on leave type policies."""

    @staticmethod
    async def _ensure_name_free(
        db: AsyncSession,
        name: str,
        *,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        query = select(LeaveType.id).where(func.lower(LeaveType.name) == name.lower())
        if exclude_id is not None:
            query = query.where(LeaveType.id != exclude_id)
        if (await db.execute(query)).scalars().first() is not None:
            raise ConflictError("name", name)

    @staticmethod
    async def _flush_unique(db: AsyncSession, name: str) -> None:
        try:
            await db.flush()
        except IntegrityError as exc:
            if "name" in str(exc.orig):
                raise ConflictError("name", name) from exc
            raise

    # ── Read ────────────────────────────────────────────────────────

    @staticmethod
    async def get(db: AsyncSession, leave_type_id: uuid.UUID) -> LeaveType:
        result = await db.execute(select(LeaveType).where(LeaveType.id == leave_type_id))
        leave_type = result.scalars().first()
        if leave_type is None:
            raise NotFoundException("LeaveType", str(leave_type_id))
        return leave_type

    @staticmethod
    async def list_types(
        db: AsyncSession,
        *,
        is_active: Optional[bool] = True,
    ) -> list[LeaveType]:
        """List leave types ordered by name; ``is_active=None`` returns all."""
        query = select(LeaveType).order_by(LeaveType.name)
        if is_active is not None:
            query = query.where(LeaveType.is_active == is_active)
        result = await db.execute(query)
        return list(result.scalars().all())

    # ── Create ──────────────────────────────────────────────────────

    @staticmethod
    async def create(
        db: AsyncSession,
        data: LeaveTypeCreate,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeaveType:
        """Create a new leave type policy."""

        await LeaveTypeService._ensure_name_free(db, data.name)

        values = data.model_dump()
        values["applicable_genders"] = [g.value for g in data.applicable_genders]
        leave_type = LeaveType(**values, created_by=actor_id, is_active=True)
        _validate_policy(leave_type)

        db.add(leave_type)
        await LeaveTypeService._flush_unique(db, data.name)

        await create_audit_entry(
            db,
            action="create",
            entity_type="leave_type",
            entity_id=leave_type.id,
            actor_id=actor_id,
            new_values=data.model_dump(mode="json"),
        )
        logger.info("Leave type %s created (%s)", leave_type.name, leave_type.id)
        return leave_type

    # ── Update ──────────────────────────────────────────────────────

    @staticmethod
    async def update(
        db: AsyncSession,
        leave_type_id: uuid.UUID,
        data: LeaveTypeUpdate,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeaveType:
        """Partial-update a policy. Existing balances are left untouched."""

        leave_type = await LeaveTypeService.get(db, leave_type_id)

        changes = data.model_dump(exclude_unset=True)
        if not changes:
            return leave_type

        if "name" in changes and changes["name"] != leave_type.name:
            await LeaveTypeService._ensure_name_free(
                db, changes["name"], exclude_id=leave_type.id,
            )
        if "applicable_genders" in changes and changes["applicable_genders"] is not None:
            changes["applicable_genders"] = [g.value for g in data.applicable_genders]

        old_values: dict[str, Any] = {}
        for field, value in changes.items():
            if value is None and field not in ("description",):
                raise ValidationException({field: ["May not be null."]})
            old_val = getattr(leave_type, field, None)
            old_values[field] = str(old_val) if isinstance(old_val, Decimal) else old_val
            setattr(leave_type, field, value)

        _validate_policy(leave_type)
        await LeaveTypeService._flush_unique(db, leave_type.name)

        await create_audit_entry(
            db,
            action="update",
            entity_type="leave_type",
            entity_id=leave_type.id,
            actor_id=actor_id,
            old_values=old_values,
            new_values=data.model_dump(mode="json", exclude_unset=True),
        )
        logger.info("Leave type %s updated: %s", leave_type.id, sorted(changes))
        return leave_type

    # ── Deactivate ──────────────────────────────────────────────────

    @staticmethod
    async def deactivate(
        db: AsyncSession,
        leave_type_id: uuid.UUID,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeaveType:
        """Hide a policy from new submissions. Idempotent; no cascade."""

        leave_type = await LeaveTypeService.get(db, leave_type_id)
        if not leave_type.is_active:
            return leave_type

        leave_type.is_active = False
        await db.flush()

        await create_audit_entry(
            db,
            action="deactivate",
            entity_type="leave_type",
            entity_id=leave_type.id,
            actor_id=actor_id,
            old_values={"is_active": True},
            new_values={"is_active": False},
        )
        logger.info("Leave type %s deactivated", leave_type.id)
        return leave_type
