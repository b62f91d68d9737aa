"""Leave module — policies, balance ledger, request lifecycle and reports."""

from timeoff.leave.models import LeaveBalance, LeaveComment, LeaveRequest, LeaveType

__all__ = ["LeaveType", "LeaveBalance", "LeaveRequest", "LeaveComment"]
