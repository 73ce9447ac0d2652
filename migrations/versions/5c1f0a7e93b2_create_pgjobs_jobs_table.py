"""create pgjobs_jobs table

Revision ID: 5c1f0a7e93b2
Revises:
Create Date: 2026-10-19 09:12:40.118304

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1f0a7e93b2"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "pgjobs_jobs",
        sa.Column(
            "queue",
            sa.Text,
            nullable=False,
            server_default="",
            comment="Logical queue, '' is the default",
        ),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            server_default=sa.text("100"),
            comment="Lower is more urgent",
        ),
        sa.Column(
            "run_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time to run job",
        ),
        sa.Column(
            "job_id",
            sa.BigInteger,
            primary_key=True,
            autoincrement=True,
            comment="Identity and advisory lock key",
        ),
        sa.Column("job_type", sa.Text, nullable=False, comment="Handler registry key"),
        sa.Column(
            "retryable",
            sa.Boolean,
            nullable=False,
            server_default=sa.text("true"),
            comment="Only retryable jobs are eligible for locking",
        ),
        sa.Column(
            "args",
            sa.JSON,
            nullable=False,
            server_default=sa.text("'[]'::json"),
            comment="Positional handler arguments",
        ),
        sa.Column(
            "error_count",
            sa.Integer,
            nullable=False,
            server_default=sa.text("0"),
            comment="Failed runs",
        ),
        sa.Column(
            "last_error",
            sa.Text,
            nullable=True,
            comment="Most recent failure with traceback",
        ),
    )

    # Matches the lock query's filter and ordering
    op.create_index(
        "pgjobs_jobs_poll_idx",
        "pgjobs_jobs",
        ["queue", "retryable", "priority", "run_at", "job_id"],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("pgjobs_jobs_poll_idx", table_name="pgjobs_jobs")
    op.drop_table("pgjobs_jobs")
