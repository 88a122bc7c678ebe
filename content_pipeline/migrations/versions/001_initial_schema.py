"""Initial content pipeline schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

Creates every table used by the pipeline. Databases created with
database.init_db() already match it and can be stamped instead:
    alembic stamp 001
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # topics table
    op.create_table(
        "topics",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("embedding", sa.LargeBinary(), nullable=True),
        sa.Column("icon", sa.Text(), nullable=True),
        sa.Column("color", sa.Text(), nullable=True),
        sa.Column("vocabulary_version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("display_name"),
    )

    # content_items table
    op.create_table(
        "content_items",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source_id", sa.Text(), nullable=False),
        sa.Column("dedup_key", sa.Text(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("external_id", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("excerpt", sa.Text(), nullable=False),
        sa.Column("topics", sa.Text(), nullable=True),
        sa.Column("embedding", sa.LargeBinary(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("classification_method", sa.Text(), nullable=False),
        sa.Column("ingested_at", sa.Integer(), nullable=False),
        sa.Column("published_at", sa.Integer(), nullable=True),
        sa.Column("click_count", sa.Integer(), nullable=False, default=0),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedup_key", name="uq_content_dedup_key"),
    )
    op.create_index("idx_content_items_ingested_at", "content_items", ["ingested_at"])
    op.create_index("idx_content_items_published_at", "content_items", ["published_at"])

    # users and their topic selections
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("is_onboarded", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_table(
        "user_topic_preferences",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("topic_id", sa.String(64), nullable=False),
        sa.Column("weight", sa.Float(), nullable=False),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"]),
        sa.ForeignKeyConstraint(["topic_id"], ["topics.id"]),
        sa.UniqueConstraint("user_id", "topic_id", name="uq_user_topic"),
    )

    # user_interactions table
    op.create_table(
        "user_interactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("content_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("occurred_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["content_id"], ["content_items.id"]),
    )
    op.create_index("idx_user_interactions_user_time", "user_interactions", ["user_id", "occurred_at"])
    op.create_index("idx_user_interactions_content", "user_interactions", ["content_id"])

    # daily drops and their ranked entries
    op.create_table(
        "daily_drops",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("generation", sa.Integer(), nullable=False),
        sa.Column("generated_at", sa.Integer(), nullable=False),
        sa.Column("delivered_at", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "generation", name="uq_user_generation"),
    )
    op.create_table(
        "daily_drop_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("drop_id", sa.Integer(), nullable=False),
        sa.Column("content_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["drop_id"], ["daily_drops.id"]),
        sa.ForeignKeyConstraint(["content_id"], ["content_items.id"]),
        sa.UniqueConstraint("drop_id", "content_id", name="uq_drop_content"),
    )
    op.create_index("idx_daily_drop_entries_content", "daily_drop_entries", ["content_id"])

    # archived_content table
    op.create_table(
        "archived_content",
        sa.Column("content_id", sa.Integer(), nullable=False),
        sa.Column("source_id", sa.Text(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("topics", sa.Text(), nullable=True),
        sa.Column("click_count", sa.Integer(), nullable=False, default=0),
        sa.Column("ingested_at", sa.Integer(), nullable=False),
        sa.Column("archived_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("content_id"),
    )

    # job_history table
    op.create_table(
        "job_history",
        sa.Column("job_name", sa.Text(), nullable=False),
        sa.Column("last_run_at", sa.Integer(), nullable=False),
        sa.Column("last_status", sa.Text(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("job_name"),
    )


def downgrade() -> None:
    op.drop_table("job_history")
    op.drop_table("archived_content")
    op.drop_index("idx_daily_drop_entries_content", table_name="daily_drop_entries")
    op.drop_table("daily_drop_entries")
    op.drop_table("daily_drops")
    op.drop_index("idx_user_interactions_content", table_name="user_interactions")
    op.drop_index("idx_user_interactions_user_time", table_name="user_interactions")
    op.drop_table("user_interactions")
    op.drop_table("user_topic_preferences")
    op.drop_table("users")
    op.drop_index("idx_content_items_published_at", table_name="content_items")
    op.drop_index("idx_content_items_ingested_at", table_name="content_items")
    op.drop_table("content_items")
    op.drop_table("topics")
