"""Initial Agora schema

Revision ID: 5e2c0a7d91b4
Revises:
Create Date: 2026-10-18 09:12:37.418206

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5e2c0a7d91b4'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_BIGINT_PK = sa.BigInteger().with_variant(sa.Integer, "sqlite")


def _timestamp(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name, sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create users, content, engagement, moderation and settings tables."""

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", _BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("username", sa.String(100), nullable=False, unique=True),
        sa.Column("avatar", sa.String(500), nullable=True),
        sa.Column("bio", sa.Text, nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="member"),
        sa.Column("approval_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("points_balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("level", sa.Integer, nullable=False, server_default="1"),
        _timestamp(),
        _timestamp("updated_at"),
        sa.Column("last_active", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("role IN ('member', 'moderator', 'admin')", name="ck_users_role"),
        sa.CheckConstraint(
            "approval_status IN ('pending', 'approved', 'rejected')",
            name="ck_users_approval_status",
        ),
        sa.CheckConstraint("points >= 0", name="ck_users_points_non_negative"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_users_points_desc", "users", ["points"])
    op.create_index("ix_users_approval_status", "users", ["approval_status"])

    # --- posts ---
    op.create_table(
        "posts",
        sa.Column("id", _BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("likes_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("comments_count", sa.Integer, nullable=False, server_default="0"),
        _timestamp(),
        sa.CheckConstraint("likes_count >= 0", name="ck_posts_likes_non_negative"),
        sa.CheckConstraint("comments_count >= 0", name="ck_posts_comments_non_negative"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_posts_user_id", "posts", ["user_id"])

    # --- comments ---
    op.create_table(
        "comments",
        sa.Column("id", _BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column(
            "post_id", sa.BigInteger,
            sa.ForeignKey("posts.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "parent_id", sa.BigInteger,
            sa.ForeignKey("comments.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("replies_count", sa.Integer, nullable=False, server_default="0"),
        _timestamp(),
        sa.CheckConstraint("replies_count >= 0", name="ck_comments_replies_non_negative"),
        sa.CheckConstraint(
            "parent_id IS NULL OR parent_id <> id", name="ck_comments_not_self_parent",
        ),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_comments_parent_id", "comments", ["parent_id"])
    op.create_index("ix_comments_post_parent", "comments", ["post_id", "parent_id"])

    # --- post_likes ---
    op.create_table(
        "post_likes",
        sa.Column(
            "post_id", sa.BigInteger,
            sa.ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        _timestamp(),
    )

    # --- user_bans ---
    op.create_table(
        "user_bans",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("banned_by", sa.BigInteger, nullable=True),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("permanent", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        _timestamp("banned_at"),
        sa.Column("unbanned_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_user_bans_user_active", "user_bans", ["user_id", "active"])
    op.create_index(
        "ix_user_bans_one_active", "user_bans", ["user_id"],
        unique=True,
        postgresql_where=sa.text("active IS true"),
    )

    # --- banned_emails (no FK: outlives the account) ---
    op.create_table(
        "banned_emails",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("banned_by", sa.BigInteger, nullable=True),
        sa.Column("reason", sa.Text, nullable=False),
        _timestamp("banned_at"),
    )

    # --- reputation_events ---
    op.create_table(
        "reputation_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("delta", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(100), nullable=False),
        sa.Column("source_key", sa.String(200), nullable=True),
        _timestamp(),
    )
    op.create_index(
        "ix_reputation_events_source_key", "reputation_events", ["source_key"],
        unique=True,
        postgresql_where=sa.text("source_key IS NOT NULL"),
    )
    op.create_index(
        "ix_reputation_events_user_time", "reputation_events", ["user_id", "created_at"],
    )

    # --- notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("link", sa.String(500), nullable=True),
        sa.Column("read", sa.Boolean, nullable=False, server_default=sa.false()),
        _timestamp(),
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "read"])

    # --- courses / lessons / lesson_progress ---
    op.create_table(
        "courses",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        _timestamp(),
    )
    op.create_table(
        "lessons",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "course_id", sa.Integer,
            sa.ForeignKey("courses.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("order_num", sa.Integer, nullable=False, server_default="0"),
        sa.Column("points", sa.Integer, nullable=True),
    )
    op.create_table(
        "lesson_progress",
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "lesson_id", sa.Integer,
            sa.ForeignKey("lessons.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("completed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    # --- admin_log ---
    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.BigInteger, nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        _timestamp("timestamp"),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"],
    )

    # --- settings ---
    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text, nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("description", sa.Text, nullable=True),
        _timestamp("updated_at"),
    )
    op.create_index("ix_settings_category", "settings", ["category"])


def downgrade() -> None:
    """Drop every Agora table (reverse dependency order)."""
    for table in (
        "settings",
        "admin_log",
        "lesson_progress",
        "lessons",
        "courses",
        "notifications",
        "reputation_events",
        "banned_emails",
        "user_bans",
        "post_likes",
        "comments",
        "posts",
        "users",
    ):
        op.drop_table(table)
