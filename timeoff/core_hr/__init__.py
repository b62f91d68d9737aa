"""Core HR module — read-only Employee projection used by the leave core."""

from timeoff.core_hr.models import Employee

__all__ = ["Employee"]
