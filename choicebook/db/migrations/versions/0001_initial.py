"""choice structures, reader paths, choice events and analytics snapshots

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from choicebook.db.types import GUID


revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "choice_structures",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("story_id", sa.String(length=128), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("structure_json", sa.JSON(), nullable=False),
        sa.Column("checksum", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("story_id", "version", name="uq_choice_structures_story_version"),
    )
    op.create_index("ix_choice_structures_story_id", "choice_structures", ["story_id"], unique=False)
    op.create_index("ix_choice_structures_version", "choice_structures", ["version"], unique=False)
    op.create_index("ix_choice_structures_created_at", "choice_structures", ["created_at"], unique=False)

    op.create_table(
        "reader_paths",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("story_id", sa.String(length=128), nullable=False),
        sa.Column("session_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("path_json", sa.JSON(), nullable=False),
        sa.Column("path_completion", sa.Float(), nullable=False),
        sa.Column("playthrough_count", sa.Integer(), nullable=False),
        sa.Column("session_start", sa.DateTime(), nullable=False),
        sa.Column("session_end", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reader_paths_user_id", "reader_paths", ["user_id"], unique=False)
    op.create_index("ix_reader_paths_story_id", "reader_paths", ["story_id"], unique=False)
    op.create_index("ix_reader_paths_session_id", "reader_paths", ["session_id"], unique=True)
    op.create_index("ix_reader_paths_status", "reader_paths", ["status"], unique=False)
    op.create_index("ix_reader_paths_updated_at", "reader_paths", ["updated_at"], unique=False)

    op.create_table(
        "choice_events",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("story_id", sa.String(length=128), nullable=False),
        sa.Column("choice_point_id", sa.String(length=128), nullable=False),
        sa.Column("choice_id", sa.String(length=128), nullable=False),
        sa.Column("session_id", sa.String(length=128), nullable=False),
        sa.Column("time_taken_seconds", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_choice_events_story_id", "choice_events", ["story_id"], unique=False)
    op.create_index("ix_choice_events_session_id", "choice_events", ["session_id"], unique=False)
    op.create_index("ix_choice_events_created_at", "choice_events", ["created_at"], unique=False)
    op.create_index(
        "ix_choice_events_story_point_choice",
        "choice_events",
        ["story_id", "choice_point_id", "choice_id"],
        unique=False,
    )

    op.create_table(
        "analytics_snapshots",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("story_id", sa.String(length=128), nullable=False),
        sa.Column("report_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_analytics_snapshots_story_id", "analytics_snapshots", ["story_id"], unique=False)
    op.create_index("ix_analytics_snapshots_created_at", "analytics_snapshots", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_analytics_snapshots_created_at", table_name="analytics_snapshots")
    op.drop_index("ix_analytics_snapshots_story_id", table_name="analytics_snapshots")
    op.drop_table("analytics_snapshots")
    op.drop_index("ix_choice_events_story_point_choice", table_name="choice_events")
    op.drop_index("ix_choice_events_created_at", table_name="choice_events")
    op.drop_index("ix_choice_events_session_id", table_name="choice_events")
    op.drop_index("ix_choice_events_story_id", table_name="choice_events")
    op.drop_table("choice_events")
    op.drop_index("ix_reader_paths_updated_at", table_name="reader_paths")
    op.drop_index("ix_reader_paths_status", table_name="reader_paths")
    op.drop_index("ix_reader_paths_session_id", table_name="reader_paths")
    op.drop_index("ix_reader_paths_story_id", table_name="reader_paths")
    op.drop_index("ix_reader_paths_user_id", table_name="reader_paths")
    op.drop_table("reader_paths")
    op.drop_index("ix_choice_structures_created_at", table_name="choice_structures")
    op.drop_index("ix_choice_structures_version", table_name="choice_structures")
    op.drop_index("ix_choice_structures_story_id", table_name="choice_structures")
    op.drop_table("choice_structures")
