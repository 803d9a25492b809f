"""create lead statuses, comments, questions and answers

Revision ID: 202610200001
Revises: 202610190001
Create Date: 2026-10-20 00:01:00
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa


revision: str = "202610200001"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "lead_statuses",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("color", sa.String(length=16), nullable=False, server_default="#9CA3AF"),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_lead_statuses_name"),
    )

    op.create_table(
        "lead_comments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("lead_id", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["lead_id"], ["leads.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by"], ["user_profiles.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_lead_comments_lead_created", "lead_comments", ["lead_id", "created_at"], unique=False)

    op.create_table(
        "lead_questions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "lead_answers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("lead_id", sa.Integer(), nullable=False),
        sa.Column("question_id", sa.Uuid(), nullable=False),
        sa.Column("answer", sa.Text(), nullable=False, server_default=""),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["lead_id"], ["leads.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["question_id"], ["lead_questions.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("lead_id", "question_id", name="uq_lead_answers_lead_question"),
    )

    _seed_system_statuses()


def downgrade() -> None:
    op.drop_table("lead_answers")
    op.drop_table("lead_questions")
    op.drop_index("ix_lead_comments_lead_created", table_name="lead_comments")
    op.drop_table("lead_comments")
    op.drop_table("lead_statuses")


def _seed_system_statuses() -> None:
    now = datetime.now(timezone.utc)
    status_table = sa.table(
        "lead_statuses",
        sa.column("id", sa.Uuid()),
        sa.column("name", sa.String()),
        sa.column("color", sa.String()),
        sa.column("is_system", sa.Boolean()),
        sa.column("created_at", sa.DateTime(timezone=True)),
    )
    op.bulk_insert(
        status_table,
        [
            {"id": uuid.UUID("0f6c1d4e-3b7a-4f51-9a0e-2c8d5b1e7a01"), "name": "New", "color": "#3B82F6", "is_system": True, "created_at": now},
            {"id": uuid.UUID("5a2e9c7b-1d4f-4e8a-b3c6-7f0a2d9e4b02"), "name": "Converted", "color": "#10B981", "is_system": True, "created_at": now},
            {"id": uuid.UUID("9d3b7e1a-6c2f-4a5d-8e9b-1c4f7a2d6e03"), "name": "Deposited", "color": "#F59E0B", "is_system": True, "created_at": now},
        ],
    )
