"""Auth dependencies — JWT validation, RBAC enforcement.

Authentication itself happens upstream; the token carries an already-resolved
identity (``sub`` = employee id, ``role``) that the leave core trusts.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable

from fastapi import Request
from fastapi.exceptions import HTTPException
from jose import ExpiredSignatureError, JWTError, jwt

from timeoff.common.constants import ROLE_HIERARCHY, UserRole
from timeoff.common.exceptions import ForbiddenException
from timeoff.config import settings


@dataclass(frozen=True)
class Actor:
    """The resolved caller identity."""

    employee_id: uuid.UUID
    role: UserRole = UserRole.employee

    def has_role(self, *roles: UserRole) -> bool:
        effective = ROLE_HIERARCHY.get(self.role, {self.role})
        return bool(effective.intersection(roles))

    @property
    def is_hr(self) -> bool:
        return self.has_role(UserRole.hr_admin)


def _extract_bearer(request: Request) -> str:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header.")
    return auth_header[7:]


# ── Core dependency ─────────────────────────────────────────────────

async def get_current_actor(request: Request) -> Actor:
    """Validate the JWT and return the caller's (employee_id, role)."""
    token = _extract_bearer(request)

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired.")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token.")

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type.")

    try:
        employee_id = uuid.UUID(payload["sub"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token subject.")

    role_str = payload.get("role", UserRole.employee.value)
    try:
        role = UserRole(role_str)
    except ValueError:
        role = UserRole.employee

    actor = Actor(employee_id=employee_id, role=role)
    request.state.actor = actor
    return actor


# ── Role-based dependency ───────────────────────────────────────────

def require_role(*allowed_roles: UserRole) -> Callable:
    """Return a FastAPI dependency that enforces role membership.

    Respects hierarchy — e.g. system_admin can access manager endpoints.
    """

    async def _check(request: Request) -> Actor:
        actor = await get_current_actor(request)
        if not actor.has_role(*allowed_roles):
            raise ForbiddenException(
                detail=f"Role '{actor.role.value}' is not permitted. Required: {[r.value for r in allowed_roles]}.",
            )
        return actor

    return _check
