"""Leave request lifecycle as an explicit transition table.

Pure data: no session, no I/O. The service looks up ``(status, action)``
here first, so an illegal move is rejected before any ledger write happens.

    ∅        ──submit──▶  pending    reserve
    pending  ──approve─▶  approved   commit
    pending  ──reject──▶  rejected   release
    pending  ──cancel──▶  cancelled  release
    approved ──cancel──▶  cancelled  reverse

``rejected`` and ``cancelled`` are terminal.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from timeoff.common.constants import TERMINAL_LEAVE_STATUSES, LeaveStatus
from timeoff.common.exceptions import InvalidTransition


class LeaveAction(str, enum.Enum):
    submit = "submit"
    approve = "approve"
    reject = "reject"
    cancel = "cancel"


class LedgerEffect(str, enum.Enum):
    reserve = "reserve"
    commit = "commit"
    release = "release"
    reverse = "reverse"


@dataclass(frozen=True)
class Transition:
    source: Optional[LeaveStatus]
    action: LeaveAction
    target: LeaveStatus
    effect: LedgerEffect


_TRANSITIONS: dict[tuple[Optional[LeaveStatus], LeaveAction], Transition] = {
    (t.source, t.action): t
    for t in (
        Transition(None, LeaveAction.submit, LeaveStatus.pending, LedgerEffect.reserve),
        Transition(LeaveStatus.pending, LeaveAction.approve, LeaveStatus.approved, LedgerEffect.commit),
        Transition(LeaveStatus.pending, LeaveAction.reject, LeaveStatus.rejected, LedgerEffect.release),
        Transition(LeaveStatus.pending, LeaveAction.cancel, LeaveStatus.cancelled, LedgerEffect.release),
        Transition(LeaveStatus.approved, LeaveAction.cancel, LeaveStatus.cancelled, LedgerEffect.reverse),
    )
}


def transition(current: Optional[LeaveStatus], action: LeaveAction) -> Transition:
    """Return the transition for *action* from *current* or raise InvalidTransition."""
    found = _TRANSITIONS.get((current, action))
    if found is None:
        raise InvalidTransition(
            current.value if current is not None else None, action.value,
        )
    return found


def allowed_actions(current: Optional[LeaveStatus]) -> list[LeaveAction]:
    return [action for (source, action) in _TRANSITIONS if source == current]


def is_terminal(status: LeaveStatus) -> bool:
    return status in TERMINAL_LEAVE_STATUSES
