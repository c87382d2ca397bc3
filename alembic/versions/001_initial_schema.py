"""Initial schema with jobs table

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATES = ("pending", "active", "completed", "failed", "dead")


def upgrade() -> None:
    # Create enum using raw SQL with IF NOT EXISTS
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE job_state AS ENUM ('pending', 'active', 'completed', 'failed', 'dead');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    # Create jobs table
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=True),
        sa.Column("payload_encoding", sa.String(16), nullable=False, server_default="json"),
        sa.Column(
            "state",
            postgresql.ENUM(*JOB_STATES, name="job_state", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "run_after",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dedupe_key", sa.String(255), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    # Claim query
    op.create_index(
        "ix_jobs_claim", "jobs", ["state", "run_after", "priority", "created_at"]
    )
    op.create_index("ix_jobs_dedupe_key", "jobs", ["dedupe_key"])

    # At most one live job per dedupe key
    op.execute("""
        CREATE UNIQUE INDEX uq_jobs_live_dedupe_key
        ON jobs (dedupe_key)
        WHERE state IN ('pending', 'active')
    """)

    # Reclaim sweep
    op.execute("""
        CREATE INDEX ix_jobs_lease_expiry
        ON jobs (lease_expires_at)
        WHERE state = 'active'
    """)


def downgrade() -> None:
    # Drop indexes
    op.execute("DROP INDEX IF EXISTS ix_jobs_lease_expiry")
    op.execute("DROP INDEX IF EXISTS uq_jobs_live_dedupe_key")
    op.drop_index("ix_jobs_dedupe_key")
    op.drop_index("ix_jobs_claim")

    # Drop table
    op.drop_table("jobs")

    # Drop enum
    op.execute("DROP TYPE IF EXISTS job_state")
