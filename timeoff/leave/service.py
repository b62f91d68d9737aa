"""Leave service layer — request lifecycle over the balance ledger.

Business logic:
  - Submission with policy checks (active type, max consecutive days,
    gender, minimum service, attachments, overlap) and a balance reservation
  - Approve / reject / cancel driven by the transition table, each running its
    ledger primitive before the status change in the same transaction
  - Editing pending requests with release-then-reserve re-booking
  - Comment threads, scoped listings and the manager approval queue
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from timeoff.auth.dependencies import Actor
from timeoff.common.audit import create_audit_entry
from timeoff.common.constants import EventType, LeaveStatus, UserRole
from timeoff.common.events import queue_event
from timeoff.common.exceptions import (
    ForbiddenException,
    InvalidTransition,
    NotFoundException,
    PolicyViolation,
    ValidationException,
)
from timeoff.common.pagination import PaginatedResponse, PaginationParams, paginate
from timeoff.core_hr.models import Employee
from timeoff.leave.ledger import LeaveLedger, balance_snapshot, flush_or_conflict
from timeoff.leave.models import BalanceKey, LeaveComment, LeaveRequest, LeaveType
from timeoff.leave.schemas import (
    LeaveCommentOut,
    LeaveRequestCreate,
    LeaveRequestOut,
    LeaveRequestUpdate,
)
from timeoff.leave.transitions import LeaveAction, transition

logger = logging.getLogger(__name__)

REBOOKING_FIELDS = frozenset({"start_date", "end_date", "attachments"})

_EVENT_FOR_ACTION = {
    LeaveAction.submit: EventType.leave_submitted,
    LeaveAction.approve: EventType.leave_approved,
    LeaveAction.reject: EventType.leave_rejected,
    LeaveAction.cancel: EventType.leave_cancelled,
}


def count_days(start_date: date, end_date: date) -> Decimal:
    """Inclusive calendar day count."""
    return Decimal((end_date - start_date).days + 1)


def request_snapshot(req: LeaveRequest) -> dict[str, Any]:
    return LeaveRequestOut.model_validate(req).model_dump(
        mode="json", exclude={"comments"},
    )


# ═════════════════════════════════════════════════════════════════════
# LeaveService
# ═════════════════════════════════════════════════════════════════════


class LeaveService:
    """Async leave request operations: submit, review, cancel, edit, list."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _load_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        *,
        lock: bool = False,
    ) -> LeaveRequest:
        query = (
            select(LeaveRequest)
            .where(LeaveRequest.id == request_id)
            .options(selectinload(LeaveRequest.employee))
        )
        if lock:
            query = query.with_for_update(of=LeaveRequest).execution_options(
                populate_existing=True,
            )
        leave_req = (await db.execute(query)).scalars().first()
        if leave_req is None:
            raise NotFoundException("LeaveRequest", str(request_id))
        return leave_req

    @staticmethod
    def _is_reviewer(actor: Actor, leave_req: LeaveRequest) -> bool:
        """HR may review anyone; a manager only their direct reports."""
        if actor.is_hr:
            return True
        return (
            actor.has_role(UserRole.manager)
            and leave_req.employee.reporting_manager_id == actor.employee_id
        )

    @staticmethod
    def _ensure_reviewer(actor: Actor, leave_req: LeaveRequest, verb: str) -> None:
        if leave_req.employee_id == actor.employee_id:
            raise ForbiddenException(f"You cannot {verb} your own leave request.")
        if not LeaveService._is_reviewer(actor, leave_req):
            raise ForbiddenException(
                f"You are not authorized to {verb} this leave request."
            )

    @staticmethod
    def _ensure_can_view(actor: Actor, leave_req: LeaveRequest) -> None:
        if leave_req.employee_id == actor.employee_id:
            return
        if not LeaveService._is_reviewer(actor, leave_req):
            raise ForbiddenException("You are not authorized to view this leave request.")

    @staticmethod
    async def _check_policy(
        db: AsyncSession,
        employee: Employee,
        leave_type: LeaveType,
        start_date: date,
        end_date: date,
        attachments: list[str],
        *,
        exclude_request_id: Optional[uuid.UUID] = None,
    ) -> Decimal:
        """Validate a (type, date range) for *employee*; return total_days."""

        if not leave_type.is_active:
            raise PolicyViolation(
                {"leave_type_id": [f"{leave_type.name} is not currently available."]}
            )

        if end_date <= start_date:
            raise ValidationException(
                {"end_date": ["End date must be after the start date."]}
            )

        total_days = count_days(start_date, end_date)
        if total_days > leave_type.max_consecutive_days:
            raise PolicyViolation(
                {"dates": [
                    f"{leave_type.name} allows a maximum of "
                    f"{leave_type.max_consecutive_days} consecutive days."
                ]}
            )

        if not leave_type.applies_to(employee.gender):
            raise PolicyViolation(
                {"leave_type_id": [
                    f"{leave_type.name} is only applicable for "
                    f"{', '.join(leave_type.applicable_genders)} employees."
                ]}
            )

        if leave_type.min_service_months:
            served = employee.months_of_service(start_date)
            if served < leave_type.min_service_months:
                raise PolicyViolation(
                    {"leave_type_id": [
                        f"{leave_type.name} requires {leave_type.min_service_months} "
                        f"month(s) of service; you will have {served}."
                    ]}
                )

        if leave_type.attachment_required and not attachments:
            raise ValidationException(
                {"attachments": [f"{leave_type.name} requires a supporting document."]}
            )

        # ── Overlap with pending / approved requests ────────────────
        overlap_q = select(func.count()).select_from(LeaveRequest).where(
            LeaveRequest.employee_id == employee.id,
            LeaveRequest.status.in_([LeaveStatus.pending, LeaveStatus.approved]),
            LeaveRequest.start_date <= end_date,
            LeaveRequest.end_date >= start_date,
        )
        if exclude_request_id is not None:
            overlap_q = overlap_q.where(LeaveRequest.id != exclude_request_id)
        if (await db.execute(overlap_q)).scalar_one() > 0:
            raise ValidationException(
                {"dates": [
                    "You already have a pending or approved leave request "
                    "overlapping with these dates."
                ]}
            )

        return total_days

    @staticmethod
    async def _record(
        db: AsyncSession,
        leave_req: LeaveRequest,
        action: LeaveAction,
        actor: Actor,
        *,
        old_status: Optional[LeaveStatus],
        balance_after: Any,
        extra: Optional[dict[str, Any]] = None,
    ) -> None:
        """Audit row + domain event for a lifecycle step."""
        new_values = {"status": leave_req.status.value, **(extra or {})}
        await create_audit_entry(
            db,
            action=action.value,
            entity_type="leave_request",
            entity_id=leave_req.id,
            actor_id=actor.employee_id,
            old_values={"status": old_status.value} if old_status else None,
            new_values=new_values,
        )
        queue_event(
            db,
            _EVENT_FOR_ACTION[action],
            entity_type="leave_request",
            entity_id=leave_req.id,
            actor_id=actor.employee_id,
            snapshot={
                "request": request_snapshot(leave_req),
                "balance": balance_snapshot(balance_after),
                **(extra or {}),
            },
        )
        logger.info(
            "Leave request %s %s by %s: %s -> %s (%s day(s))",
            leave_req.id, action.value, actor.employee_id,
            old_status.value if old_status else "new",
            leave_req.status.value, leave_req.total_days,
        )

    # ─────────────────────────────────────────────────────────────────
    # Submit
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def submit_leave(
        db: AsyncSession,
        actor: Actor,
        data: LeaveRequestCreate,
    ) -> LeaveRequestOut:
        """Submit a leave request for the calling employee.

        The balance for ``(employee, type, start_date.year)`` is created from
        the policy if this is the first request against it, then the days are
        reserved. Either both the reservation and the request persist or
        neither does.
        """
        step = transition(None, LeaveAction.submit)

        employee = (
            await db.execute(
                select(Employee).where(
                    Employee.id == actor.employee_id, Employee.is_active.is_(True),
                )
            )
        ).scalars().first()
        if employee is None:
            raise NotFoundException("Employee", str(actor.employee_id))

        leave_type = (
            await db.execute(select(LeaveType).where(LeaveType.id == data.leave_type_id))
        ).scalars().first()
        if leave_type is None:
            raise NotFoundException("LeaveType", str(data.leave_type_id))

        total_days = await LeaveService._check_policy(
            db, employee, leave_type, data.start_date, data.end_date, data.attachments,
        )

        year = data.start_date.year
        await LeaveLedger.get_or_create_balance(db, employee.id, leave_type, year)
        balance = await LeaveLedger.apply_effect(
            db, step.effect, BalanceKey(employee.id, leave_type.id, year), total_days,
        )

        leave_req = LeaveRequest(
            employee_id=employee.id,
            leave_type_id=leave_type.id,
            start_date=data.start_date,
            end_date=data.end_date,
            balance_year=year,
            total_days=total_days,
            reason=data.reason,
            status=step.target,
            attachments=list(data.attachments),
            is_emergency=data.is_emergency,
            handover_notes=data.handover_notes,
            contact_during_leave=(
                data.contact_during_leave.model_dump(exclude_none=True)
                if data.contact_during_leave else None
            ),
            comments=[],
        )
        db.add(leave_req)
        await db.flush()

        await LeaveService._record(
            db, leave_req, LeaveAction.submit, actor,
            old_status=None,
            balance_after=balance,
            extra={
                "leave_type": leave_type.name,
                "start_date": data.start_date.isoformat(),
                "end_date": data.end_date.isoformat(),
                "total_days": str(total_days),
            },
        )
        return LeaveRequestOut.model_validate(leave_req)

    # ─────────────────────────────────────────────────────────────────
    # Review / cancel
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _apply_transition(
        db: AsyncSession,
        leave_req: LeaveRequest,
        action: LeaveAction,
    ):
        """Ledger effect first, then the status; returns the updated balance."""
        step = transition(leave_req.status, action)
        balance = await LeaveLedger.apply_effect(
            db, step.effect, leave_req.balance_key, Decimal(leave_req.total_days),
        )
        leave_req.status = step.target
        return balance

    @staticmethod
    async def approve_leave(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor: Actor,
        *,
        remarks: Optional[str] = None,
    ) -> LeaveRequestOut:
        """Approve a pending request (pending → used on the ledger)."""

        leave_req = await LeaveService._load_request(db, request_id, lock=True)
        LeaveService._ensure_reviewer(actor, leave_req, "approve")
        old_status = leave_req.status

        balance = await LeaveService._apply_transition(db, leave_req, LeaveAction.approve)
        leave_req.approved_by = actor.employee_id
        leave_req.approved_at = datetime.now(timezone.utc)
        if remarks and remarks.strip():
            leave_req.comments.append(
                LeaveComment(author_id=actor.employee_id, body=remarks.strip())
            )
        await flush_or_conflict(db, "LeaveRequest", leave_req.id)

        await LeaveService._record(
            db, leave_req, LeaveAction.approve, actor,
            old_status=old_status, balance_after=balance,
            extra={"remarks": remarks} if remarks else None,
        )
        return LeaveRequestOut.model_validate(leave_req)

    @staticmethod
    async def reject_leave(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor: Actor,
        reason: str,
        *,
        comment: Optional[str] = None,
    ) -> LeaveRequestOut:
        """Reject a pending request and release its reserved days."""

        if not reason or not reason.strip():
            raise ValidationException({"reason": ["Rejection reason is required."]})

        leave_req = await LeaveService._load_request(db, request_id, lock=True)
        LeaveService._ensure_reviewer(actor, leave_req, "reject")
        old_status = leave_req.status

        balance = await LeaveService._apply_transition(db, leave_req, LeaveAction.reject)
        leave_req.rejected_by = actor.employee_id
        leave_req.rejected_at = datetime.now(timezone.utc)
        leave_req.rejection_reason = reason.strip()
        if comment and comment.strip():
            leave_req.comments.append(
                LeaveComment(author_id=actor.employee_id, body=comment.strip())
            )
        await flush_or_conflict(db, "LeaveRequest", leave_req.id)

        await LeaveService._record(
            db, leave_req, LeaveAction.reject, actor,
            old_status=old_status, balance_after=balance,
            extra={"reason": leave_req.rejection_reason},
        )
        return LeaveRequestOut.model_validate(leave_req)

    @staticmethod
    async def cancel_leave(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor: Actor,
        *,
        reason: Optional[str] = None,
    ) -> LeaveRequestOut:
        """Cancel a pending or approved request.

        Pending days are released; approved days are reversed out of ``used``.
        The owner, their manager or HR may cancel.
        """

        leave_req = await LeaveService._load_request(db, request_id, lock=True)
        if leave_req.employee_id != actor.employee_id and not LeaveService._is_reviewer(
            actor, leave_req,
        ):
            raise ForbiddenException("You are not authorized to cancel this leave request.")
        old_status = leave_req.status

        balance = await LeaveService._apply_transition(db, leave_req, LeaveAction.cancel)
        leave_req.cancelled_by = actor.employee_id
        leave_req.cancelled_at = datetime.now(timezone.utc)
        leave_req.cancellation_reason = reason.strip() if reason else None
        await flush_or_conflict(db, "LeaveRequest", leave_req.id)

        await LeaveService._record(
            db, leave_req, LeaveAction.cancel, actor,
            old_status=old_status, balance_after=balance,
            extra={"reason": leave_req.cancellation_reason},
        )
        return LeaveRequestOut.model_validate(leave_req)

    # ─────────────────────────────────────────────────────────────────
    # Edit pending
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def update_leave(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor: Actor,
        data: LeaveRequestUpdate,
    ) -> LeaveRequestOut:
        """Edit a pending request; date changes re-book the reservation.

        Same ledger year: one ``rebook`` on the key. Different year: reserve on
        the new key first, then release the old one, so a refused reservation
        leaves the original booking untouched. Edits that touch none of
        ``REBOOKING_FIELDS`` skip the policy checks and the ledger.
        """

        leave_req = await LeaveService._load_request(db, request_id, lock=True)
        if leave_req.employee_id != actor.employee_id and not actor.is_hr:
            raise ForbiddenException("You are not authorized to edit this leave request.")
        if leave_req.status != LeaveStatus.pending:
            raise InvalidTransition(leave_req.status.value, "update")

        changes = data.model_dump(exclude_unset=True)
        if not changes:
            return LeaveRequestOut.model_validate(leave_req)

        old_values = {
            "start_date": leave_req.start_date.isoformat(),
            "end_date": leave_req.end_date.isoformat(),
            "total_days": str(leave_req.total_days),
            "balance_year": leave_req.balance_year,
        }
        old_key = leave_req.balance_key
        old_total = Decimal(leave_req.total_days)

        # Notes-only edits keep the booking and skip the policy checks
        if REBOOKING_FIELDS.isdisjoint(changes):
            balance = await LeaveLedger.lock_balance(db, old_key)
        else:
            start_date = changes.get("start_date") or leave_req.start_date
            end_date = changes.get("end_date") or leave_req.end_date
            attachments = (
                changes["attachments"] if changes.get("attachments") is not None
                else leave_req.attachments
            )

            leave_type = (
                await db.execute(select(LeaveType).where(LeaveType.id == leave_req.leave_type_id))
            ).scalars().first()
            new_total = await LeaveService._check_policy(
                db, leave_req.employee, leave_type, start_date, end_date, attachments,
                exclude_request_id=leave_req.id,
            )
            new_year = start_date.year

            if new_year == leave_req.balance_year:
                balance = await LeaveLedger.rebook(db, old_key, old_total, new_total)
            else:
                await LeaveLedger.get_or_create_balance(
                    db, leave_req.employee_id, leave_type, new_year,
                )
                balance = await LeaveLedger.reserve(
                    db, BalanceKey(leave_req.employee_id, leave_type.id, new_year), new_total,
                )
                await LeaveLedger.release(db, old_key, old_total)

            leave_req.start_date = start_date
            leave_req.end_date = end_date
            leave_req.balance_year = new_year
            leave_req.total_days = new_total
            leave_req.attachments = list(attachments)

        if changes.get("reason") is not None:
            leave_req.reason = changes["reason"]
        if changes.get("is_emergency") is not None:
            leave_req.is_emergency = changes["is_emergency"]
        if "handover_notes" in changes:
            leave_req.handover_notes = changes["handover_notes"]
        if "contact_during_leave" in changes:
            leave_req.contact_during_leave = (
                data.contact_during_leave.model_dump(exclude_none=True)
                if data.contact_during_leave else None
            )
        await flush_or_conflict(db, "LeaveRequest", leave_req.id)

        new_values = {
            "start_date": leave_req.start_date.isoformat(),
            "end_date": leave_req.end_date.isoformat(),
            "total_days": str(leave_req.total_days),
            "balance_year": leave_req.balance_year,
        }
        await create_audit_entry(
            db,
            action="update",
            entity_type="leave_request",
            entity_id=leave_req.id,
            actor_id=actor.employee_id,
            old_values=old_values,
            new_values=new_values,
        )
        queue_event(
            db,
            EventType.leave_updated,
            entity_type="leave_request",
            entity_id=leave_req.id,
            actor_id=actor.employee_id,
            snapshot={
                "request": request_snapshot(leave_req),
                "balance": balance_snapshot(balance),
                "previous": old_values,
            },
        )
        logger.info(
            "Leave request %s edited by %s: %s -> %s day(s)",
            leave_req.id, actor.employee_id, old_total, leave_req.total_days,
        )
        return LeaveRequestOut.model_validate(leave_req)

    # ─────────────────────────────────────────────────────────────────
    # Comments
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def add_comment(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor: Actor,
        body: str,
    ) -> LeaveCommentOut:
        """Append to the thread; allowed in any status, no ledger effect."""
        if not body or not body.strip():
            raise ValidationException({"body": ["Comment is required."]})

        leave_req = await LeaveService._load_request(db, request_id)
        LeaveService._ensure_can_view(actor, leave_req)

        comment = LeaveComment(author_id=actor.employee_id, body=body.strip())
        leave_req.comments.append(comment)
        await db.flush()
        return LeaveCommentOut.model_validate(comment)

    # ─────────────────────────────────────────────────────────────────
    # Read
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor: Actor,
    ) -> LeaveRequestOut:
        leave_req = await LeaveService._load_request(db, request_id)
        LeaveService._ensure_can_view(actor, leave_req)
        return LeaveRequestOut.model_validate(leave_req)

    @staticmethod
    async def get_leave_requests(
        db: AsyncSession,
        actor: Actor,
        pagination: PaginationParams,
        *,
        scope: str = "my",
        employee_id: Optional[uuid.UUID] = None,
        status: Optional[LeaveStatus] = None,
        leave_type_id: Optional[uuid.UUID] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> PaginatedResponse:
        """List leave requests with pagination and filters.

        Scopes:
          - my: own requests only
          - team: direct reports of the caller (managers)
          - all: every request (HR only)
        """

        query = select(LeaveRequest).order_by(
            LeaveRequest.start_date.desc(), LeaveRequest.applied_at.desc(),
        )

        if scope == "my":
            query = query.where(LeaveRequest.employee_id == actor.employee_id)
        elif scope == "team":
            if not actor.has_role(UserRole.manager):
                raise ForbiddenException("Only managers can list team leave requests.")
            report_ids = select(Employee.id).where(
                Employee.reporting_manager_id == actor.employee_id,
            )
            query = query.where(LeaveRequest.employee_id.in_(report_ids))
        elif scope == "all":
            if not actor.is_hr:
                raise ForbiddenException("Only HR can list all leave requests.")
        else:
            raise ValidationException({"scope": ["Must be one of: my, team, all."]})

        if employee_id:
            query = query.where(LeaveRequest.employee_id == employee_id)
        if status:
            query = query.where(LeaveRequest.status == status)
        if leave_type_id:
            query = query.where(LeaveRequest.leave_type_id == leave_type_id)
        if from_date:
            query = query.where(LeaveRequest.end_date >= from_date)
        if to_date:
            query = query.where(LeaveRequest.start_date <= to_date)

        return await paginate(
            db, query, pagination, transform=LeaveRequestOut.model_validate,
        )

    @staticmethod
    async def get_pending_approvals(
        db: AsyncSession,
        manager_id: uuid.UUID,
    ) -> list[LeaveRequestOut]:
        """Pending requests of a manager's active direct reports, oldest first."""

        result = await db.execute(
            select(LeaveRequest)
            .join(Employee, LeaveRequest.employee_id == Employee.id)
            .where(
                Employee.reporting_manager_id == manager_id,
                Employee.is_active.is_(True),
                LeaveRequest.status == LeaveStatus.pending,
            )
            .order_by(LeaveRequest.applied_at.asc())
        )
        return [LeaveRequestOut.model_validate(r) for r in result.scalars().all()]
