"""create segment tables

Revision ID: 4d2a9c1e7b30
Revises:
Create Date: 2026-09-28 10:20:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "4d2a9c1e7b30"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "streaming_sources",
        sa.Column("identity", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("bootstrap_servers", sa.String(), nullable=False),
        sa.Column("parser_name", sa.String(), nullable=False),
        sa.Column("parser_properties", sa.JSON(), nullable=False),
        sa.Column("columns", sa.JSON(), nullable=False),
        sa.Column("timeout_ms", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("identity"),
    )

    op.create_table(
        "segments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("cube_name", sa.String(), nullable=False),
        sa.Column("source_identity", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("build_state", sa.String(), nullable=False),
        sa.Column("failed_state", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_job_id", sa.String(), nullable=True),
        sa.Column("time_range_start", sa.BigInteger(), nullable=True),
        sa.Column("time_range_end", sa.BigInteger(), nullable=True),
        sa.Column("input_records", sa.BigInteger(), nullable=True),
        sa.Column("rejected_records", sa.BigInteger(), nullable=True),
        sa.Column("input_bytes", sa.BigInteger(), nullable=True),
        sa.Column("materialized_at", sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('NEW', 'READY', 'MERGED', 'DISCARDED')",
            name="ck_segments_status_valid",
        ),
        sa.ForeignKeyConstraint(["source_identity"], ["streaming_sources.identity"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_segments_cube_status",
        "segments",
        ["cube_name", "status"],
        unique=False,
    )

    op.create_table(
        "segment_partition_offsets",
        sa.Column("segment_id", sa.String(length=36), nullable=False),
        sa.Column("partition_number", sa.Integer(), nullable=False),
        sa.Column("start_offset", sa.BigInteger(), nullable=False),
        sa.Column("end_offset", sa.BigInteger(), nullable=False),
        sa.CheckConstraint("start_offset <= end_offset", name="ck_segment_offsets_ordered"),
        sa.ForeignKeyConstraint(["segment_id"], ["segments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("segment_id", "partition_number"),
    )

    op.create_table(
        "segment_merge_sources",
        sa.Column("merged_segment_id", sa.String(length=36), nullable=False),
        sa.Column("source_segment_id", sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(["merged_segment_id"], ["segments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["source_segment_id"], ["segments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("merged_segment_id", "source_segment_id"),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("segment_merge_sources")
    op.drop_table("segment_partition_offsets")
    op.drop_index("ix_segments_cube_status", table_name="segments")
    op.drop_table("segments")
    op.drop_table("streaming_sources")
