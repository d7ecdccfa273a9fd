"""Generation jobs schema.

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates:
  - tunesmith_generation_jobs (one row per music generation request)

Fresh install:
  alembic upgrade head
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tunesmith_generation_jobs",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("requester_id", sa.String(64), nullable=True),
        # Request
        sa.Column("prompt_text", sa.Text(), nullable=False),
        sa.Column("style_tag", sa.String(64), nullable=True),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("lyrics", sa.Text(), nullable=True),
        sa.Column("wants_instrumental", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("wants_generated_lyrics", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("voice_gender", sa.String(8), nullable=False, server_default="auto"),
        sa.Column("target_duration_seconds", sa.Integer(), nullable=False, server_default="180"),
        # Lifecycle
        sa.Column("state", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("provider_task_id", sa.String(128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        # Result
        sa.Column("result_url", sa.Text(), nullable=True),
        sa.Column("durable_storage_ref", sa.String(512), nullable=True),
        sa.Column("result_lyrics", sa.Text(), nullable=True),
        sa.Column("result_title", sa.String(255), nullable=True),
        sa.Column("result_duration_seconds", sa.Integer(), nullable=True),
        sa.Column("result_description", sa.Text(), nullable=True),
        sa.Column("fallback_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_tunesmith_generation_jobs_requester_state",
        "tunesmith_generation_jobs",
        ["requester_id", "state"],
    )
    op.create_index(
        "ix_tunesmith_generation_jobs_state_created",
        "tunesmith_generation_jobs",
        ["state", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_tunesmith_generation_jobs_state_created", table_name="tunesmith_generation_jobs")
    op.drop_index("ix_tunesmith_generation_jobs_requester_state", table_name="tunesmith_generation_jobs")
    op.drop_table("tunesmith_generation_jobs")
