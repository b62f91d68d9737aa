"""Shared test fixtures — async DB, client, auth helpers, factories.

Reusable across all test modules (policy, ledger, lifecycle, events, API).
Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import os

# Set test JWT_SECRET before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from timeoff.common.constants import ApplicableGender, GenderType, UserRole
from timeoff.common.events import dispatcher
from timeoff.config import settings
from timeoff.database import Base, get_db
from timeoff.main import create_app

# Import ALL model modules so SQLAlchemy can resolve cross-module relationships
# (e.g. Employee → LeaveBalance, LeaveRequest)
import timeoff.common.audit  # noqa: F401
import timeoff.core_hr.models  # noqa: F401
import timeoff.leave.models  # noqa: F401

from timeoff.auth.dependencies import Actor
from timeoff.core_hr.models import Employee
from timeoff.leave.models import LeaveType


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    """Reset rate limiter storage between tests to prevent cross-test interference."""
    from timeoff.common.rate_limit import limiter

    limiter.reset()
    yield


@pytest.fixture(autouse=True)
async def _reset_dispatcher():
    """No sinks leak between tests; in-flight deliveries finish before teardown."""
    dispatcher.clear()
    yield
    await dispatcher.drain()
    dispatcher.clear()


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
async def app():
    """Create a fresh app instance with DB dependency overridden."""
    application = create_app()
    application.dependency_overrides[get_db] = _override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


# ── Model factories ─────────────────────────────────────────────────

async def _seed_employee(
    db: AsyncSession,
    *,
    first_name: str = "Test",
    last_name: str = "Employee",
    gender: Optional[GenderType] = GenderType.female,
    date_of_joining: date = date(2024, 1, 15),
    department: Optional[str] = "Engineering",
    reporting_manager_id: Optional[uuid.UUID] = None,
    is_active: bool = True,
) -> Employee:
    code = uuid.uuid4().hex[:6].upper()
    emp = Employee(
        id=uuid.uuid4(),
        employee_code=f"TO-{code}",
        first_name=first_name,
        last_name=last_name,
        email=f"{first_name.lower()}.{code.lower()}@example.com",
        gender=gender,
        date_of_joining=date_of_joining,
        department=department,
        reporting_manager_id=reporting_manager_id,
        is_active=is_active,
    )
    db.add(emp)
    await db.flush()
    return emp


async def _seed_leave_type(
    db: AsyncSession,
    *,
    name: str = "Annual Leave",
    yearly_allotment: Decimal = Decimal("10"),
    max_consecutive_days: int = 15,
    carry_forward_allowed: bool = False,
    max_carry_forward_days: Decimal = Decimal("0"),
    encashment_allowed: bool = False,
    attachment_required: bool = False,
    min_service_months: int = 0,
    applicable_genders: Optional[list[ApplicableGender]] = None,
    is_active: bool = True,
) -> LeaveType:
    lt = LeaveType(
        id=uuid.uuid4(),
        name=name,
        yearly_allotment=yearly_allotment,
        max_consecutive_days=max_consecutive_days,
        carry_forward_allowed=carry_forward_allowed,
        max_carry_forward_days=max_carry_forward_days,
        encashment_allowed=encashment_allowed,
        attachment_required=attachment_required,
        min_service_months=min_service_months,
        applicable_genders=[
            g.value for g in (applicable_genders or [ApplicableGender.all])
        ],
        is_active=is_active,
    )
    db.add(lt)
    await db.flush()
    return lt


async def _seed_team(db: AsyncSession) -> tuple[Employee, Employee, Employee]:
    """(manager, employee reporting to manager, HR admin)."""
    manager = await _seed_employee(db, first_name="Maya", last_name="Manager")
    employee = await _seed_employee(
        db, first_name="Eli", last_name="Employee", reporting_manager_id=manager.id,
    )
    hr = await _seed_employee(db, first_name="Hana", last_name="Hr")
    return manager, employee, hr


def as_actor(employee: Employee, role: UserRole = UserRole.employee) -> Actor:
    return Actor(employee_id=employee.id, role=role)


# ── Auth helpers ────────────────────────────────────────────────────

def create_access_token(
    employee_id: uuid.UUID,
    role: UserRole = UserRole.employee,
    expired: bool = False,
) -> str:
    """Generate a JWT access token for testing."""
    if expired:
        exp = datetime.now(timezone.utc) - timedelta(hours=1)
    else:
        exp = datetime.now(timezone.utc) + timedelta(hours=1)
    payload = {
        "sub": str(employee_id),
        "role": role.value,
        "type": "access",
        "exp": exp,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers(
    employee_id: uuid.UUID,
    role: UserRole = UserRole.employee,
) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(employee_id, role)}"}
