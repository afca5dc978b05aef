"""Initial schema: profiles, practitioners, sessions, reviews, audit log.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    # ── Standalone tables (no FKs) ─────────────────────────────────────

    op.create_table(
        "audit_log",
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("session_id", postgresql.UUID(as_uuid=True)),
        sa.Column("actor_id", sa.String(100), comment="User ID or 'system'"),
        sa.Column("actor_role", sa.String(50), comment="guest, practitioner, system"),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_log_event_type", "audit_log", ["event_type"])
    op.create_index("ix_audit_log_session_id", "audit_log", ["session_id"])

    # id mirrors the auth provider's user id, so no server default
    op.create_table(
        "profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("display_name", sa.String(200), nullable=False),
        sa.Column("country", sa.String(100)),
        sa.Column("bio", sa.Text()),
        sa.Column("avatar_url", sa.String(500)),
        sa.Column("specialties", postgresql.JSONB(astext_type=sa.Text())),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    # ── Tables with FK to profiles ─────────────────────────────────────

    op.create_table(
        "practitioners",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("is_online", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("in_service", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("rating", sa.Numeric(2, 1), server_default="0.0", nullable=False),
        sa.Column("review_count", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "sessions",
        sa.Column("practitioner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("guest_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("phase", sa.String(20), server_default="room_timer", nullable=False),
        sa.Column("end_reason", sa.String(20)),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        sa.Column("waiting_seconds", sa.Integer(), server_default="60", nullable=False),
        sa.Column("live_seconds", sa.Integer(), server_default="900", nullable=False),
        sa.Column("waiting_started_at", sa.DateTime(timezone=True)),
        sa.Column("live_started_at", sa.DateTime(timezone=True)),
        sa.Column("ended_at", sa.DateTime(timezone=True)),
        sa.Column("acknowledged_practitioner", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("ready_practitioner", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("ready_guest", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("agora_channel", sa.String(64)),
        sa.Column("agora_uid_guest", sa.String(20)),
        sa.Column("agora_uid_practitioner", sa.String(20)),
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["practitioner_id"], ["profiles.id"]),
        sa.ForeignKeyConstraint(["guest_id"], ["profiles.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sessions_practitioner_id", "sessions", ["practitioner_id"])
    op.create_index("ix_sessions_guest_id", "sessions", ["guest_id"])
    op.create_index("ix_sessions_phase", "sessions", ["phase"])
    # At most one non-terminal session per practitioner
    op.create_index(
        "uq_sessions_practitioner_active",
        "sessions",
        ["practitioner_id"],
        unique=True,
        postgresql_where=sa.text("phase <> 'ended'"),
    )

    # ── Tables with FK to sessions ─────────────────────────────────────

    op.create_table(
        "reviews",
        sa.Column("session_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("guest_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("practitioner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text()),
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_reviews_rating_range"),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["guest_id"], ["profiles.id"]),
        sa.ForeignKeyConstraint(["practitioner_id"], ["profiles.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id"),
    )
    op.create_index("ix_reviews_practitioner_id", "reviews", ["practitioner_id"])


def downgrade() -> None:
    # Drop in reverse dependency order
    op.drop_table("reviews")
    op.drop_index("uq_sessions_practitioner_active", table_name="sessions")
    op.drop_table("sessions")
    op.drop_table("practitioners")
    op.drop_table("profiles")
    op.drop_table("audit_log")
