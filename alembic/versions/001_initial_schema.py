"""001 – Initial schema: employees projection, leave policy, ledger, requests.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000+00:00
"""

from alembic import op

# Revision identifiers
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENUM_TYPES: list[tuple[str, list[str]]] = [
    ("gender_type", ["male", "female", "other", "undisclosed"]),
    ("leave_status", ["pending", "approved", "rejected", "cancelled"]),
]


def _create_enum(name: str, values: list[str]) -> None:
    vals = ", ".join(f"'{v}'" for v in values)
    op.execute(f"CREATE TYPE {name} AS ENUM ({vals})")


def _drop_enum(name: str) -> None:
    op.execute(f"DROP TYPE IF EXISTS {name}")


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    # ── Extensions ────────────────────────────────────────────────────────
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ── Enum types ────────────────────────────────────────────────────────
    for name, values in ENUM_TYPES:
        _create_enum(name, values)

    # ── 1. employees (directory projection) ───────────────────────────────
    op.execute("""
        CREATE TABLE employees (
            id                   UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_code        VARCHAR(20)  NOT NULL UNIQUE,
            first_name           VARCHAR(100) NOT NULL,
            last_name            VARCHAR(100) NOT NULL,
            display_name         VARCHAR(255),
            email                VARCHAR(255) NOT NULL UNIQUE,
            gender               gender_type,
            date_of_joining      DATE NOT NULL,
            department           VARCHAR(100),
            reporting_manager_id UUID REFERENCES employees(id),
            is_active            BOOLEAN NOT NULL DEFAULT TRUE,
            created_at           TIMESTAMPTZ DEFAULT NOW(),
            updated_at           TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX idx_employees_manager ON employees(reporting_manager_id)")

    # ── 2. leave_types ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_types (
            id                     UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name                   VARCHAR(100) NOT NULL UNIQUE,
            description            TEXT,
            yearly_allotment       NUMERIC(5,1) NOT NULL,
            max_consecutive_days   INTEGER NOT NULL,
            carry_forward_allowed  BOOLEAN NOT NULL DEFAULT FALSE,
            max_carry_forward_days NUMERIC(5,1) NOT NULL DEFAULT 0,
            encashment_allowed     BOOLEAN NOT NULL DEFAULT FALSE,
            attachment_required    BOOLEAN NOT NULL DEFAULT FALSE,
            min_service_months     INTEGER NOT NULL DEFAULT 0,
            applicable_genders     JSONB NOT NULL DEFAULT '["all"]',
            color                  VARCHAR(7) NOT NULL DEFAULT '#3B82F6',
            is_active              BOOLEAN NOT NULL DEFAULT TRUE,
            created_by             UUID,
            created_at             TIMESTAMPTZ DEFAULT NOW(),
            updated_at             TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_leave_type_allotment   CHECK (yearly_allotment >= 0),
            CONSTRAINT ck_leave_type_consecutive CHECK (max_consecutive_days >= 1),
            CONSTRAINT ck_leave_type_carry_cap   CHECK (max_carry_forward_days >= 0),
            CONSTRAINT ck_leave_type_service     CHECK (min_service_months >= 0)
        )
    """)

    # ── 3. leave_balances (one ledger account per employee/type/year) ─────
    op.execute("""
        CREATE TABLE leave_balances (
            id              UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id     UUID NOT NULL REFERENCES employees(id),
            leave_type_id   UUID NOT NULL REFERENCES leave_types(id),
            year            INTEGER NOT NULL,
            allocated       NUMERIC(5,1) NOT NULL DEFAULT 0,
            used            NUMERIC(5,1) NOT NULL DEFAULT 0,
            pending         NUMERIC(5,1) NOT NULL DEFAULT 0,
            carried_forward NUMERIC(5,1) NOT NULL DEFAULT 0,
            encashed        NUMERIC(5,1) NOT NULL DEFAULT 0,
            remaining       NUMERIC(6,1) NOT NULL DEFAULT 0,
            version         INTEGER NOT NULL,
            created_at      TIMESTAMPTZ DEFAULT NOW(),
            updated_at      TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_leave_balance UNIQUE (employee_id, leave_type_id, year),
            CONSTRAINT ck_leave_balance_allocated CHECK (allocated >= 0),
            CONSTRAINT ck_leave_balance_used      CHECK (used >= 0),
            CONSTRAINT ck_leave_balance_pending   CHECK (pending >= 0),
            CONSTRAINT ck_leave_balance_carried   CHECK (carried_forward >= 0),
            CONSTRAINT ck_leave_balance_encashed  CHECK (encashed >= 0)
        )
    """)

    # ── 4. leave_requests ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_requests (
            id                   UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id          UUID NOT NULL REFERENCES employees(id),
            leave_type_id        UUID NOT NULL REFERENCES leave_types(id),
            start_date           DATE NOT NULL,
            end_date             DATE NOT NULL,
            balance_year         INTEGER NOT NULL,
            total_days           NUMERIC(5,1) NOT NULL,
            reason               TEXT NOT NULL,
            status               leave_status NOT NULL DEFAULT 'pending',
            applied_at           TIMESTAMPTZ DEFAULT NOW(),
            approved_by          UUID,
            approved_at          TIMESTAMPTZ,
            rejected_by          UUID,
            rejected_at          TIMESTAMPTZ,
            rejection_reason     TEXT,
            cancelled_by         UUID,
            cancelled_at         TIMESTAMPTZ,
            cancellation_reason  TEXT,
            attachments          JSONB NOT NULL DEFAULT '[]',
            is_emergency         BOOLEAN NOT NULL DEFAULT FALSE,
            handover_notes       TEXT,
            contact_during_leave JSONB,
            version              INTEGER NOT NULL,
            created_at           TIMESTAMPTZ DEFAULT NOW(),
            updated_at           TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_leave_request_dates CHECK (end_date > start_date),
            CONSTRAINT ck_leave_request_days  CHECK (total_days > 0)
        )
    """)
    op.execute(
        "CREATE INDEX ix_leave_requests_employee_status "
        "ON leave_requests(employee_id, status)"
    )
    op.execute(
        "CREATE INDEX ix_leave_requests_balance_key "
        "ON leave_requests(employee_id, leave_type_id, balance_year)"
    )

    # ── 5. leave_comments ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_comments (
            id               UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            leave_request_id UUID NOT NULL REFERENCES leave_requests(id) ON DELETE CASCADE,
            author_id        UUID NOT NULL,
            body             TEXT NOT NULL,
            created_at       TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute(
        "CREATE INDEX ix_leave_comments_leave_request_id "
        "ON leave_comments(leave_request_id)"
    )

    # ── 6. audit_trail ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE audit_trail (
            id          UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            actor_id    UUID,
            action      VARCHAR(50) NOT NULL,
            entity_type VARCHAR(50) NOT NULL,
            entity_id   UUID NOT NULL,
            old_values  JSONB,
            new_values  JSONB,
            created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_audit_trail_actor_id   ON audit_trail(actor_id)")
    op.execute("CREATE INDEX ix_audit_trail_entity     ON audit_trail(entity_type, entity_id)")
    op.execute("CREATE INDEX ix_audit_trail_created_at ON audit_trail(created_at)")


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    # Drop tables in reverse dependency order
    tables = [
        "audit_trail",
        "leave_comments",
        "leave_requests",
        "leave_balances",
        "leave_types",
        "employees",
    ]
    for t in tables:
        op.execute(f"DROP TABLE IF EXISTS {t} CASCADE")

    for name, _ in reversed(ENUM_TYPES):
        _drop_enum(name)
