# flake8: noqa

"""create coordination tables
Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic
revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _base_columns():
    return [
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        *_base_columns(),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("email_unsubscribed", sa.Boolean(), server_default=sa.false(), nullable=False),
    )

    op.create_table(
        "scheduled_emails",
        *_base_columns(),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("message_html", sa.Text(), nullable=False),
        sa.Column("template_type", sa.String(), server_default="announcement", nullable=False),
        sa.Column(
            "recipient_ids",
            postgresql.JSONB(),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("recipient_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("scheduled_for", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("sent_count", sa.Integer(), nullable=True),
        sa.Column("failed_count", sa.Integer(), nullable=True),
        sa.Column("suppressed_count", sa.Integer(), nullable=True),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_scheduled_emails_status_scheduled_for",
        "scheduled_emails",
        ["status", "scheduled_for"],
    )
    op.create_index("ix_scheduled_emails_created_by", "scheduled_emails", ["created_by"])

    op.create_table(
        "import_sessions",
        *_base_columns(),
        sa.Column(
            "user_id",
            sa.UUID(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="running", nullable=False),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("last_activity_received_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("unassigned_ride_count", sa.Integer(), server_default="0", nullable=False),
    )
    op.create_index("ix_import_sessions_user_id", "import_sessions", ["user_id"])
    op.create_index(
        "ix_import_sessions_status_last_activity",
        "import_sessions",
        ["status", "last_activity_received_at"],
    )

    op.create_table(
        "rides",
        *_base_columns(),
        sa.Column(
            "user_id",
            sa.UUID(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "import_session_id",
            sa.UUID(),
            sa.ForeignKey("import_sessions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("bike_id", sa.UUID(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("start_lat", sa.Float(), nullable=True),
        sa.Column("start_lng", sa.Float(), nullable=True),
    )
    op.create_index("ix_rides_user_id", "rides", ["user_id"])
    op.create_index("ix_rides_import_session_id", "rides", ["import_session_id"])

    op.create_table(
        "oauth_tokens",
        *_base_columns(),
        sa.Column(
            "user_id",
            sa.UUID(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "provider"),
    )


def downgrade() -> None:
    op.drop_table("oauth_tokens")
    op.drop_index("ix_rides_import_session_id", table_name="rides")
    op.drop_index("ix_rides_user_id", table_name="rides")
    op.drop_table("rides")
    op.drop_index("ix_import_sessions_status_last_activity", table_name="import_sessions")
    op.drop_index("ix_import_sessions_user_id", table_name="import_sessions")
    op.drop_table("import_sessions")
    op.drop_index("ix_scheduled_emails_created_by", table_name="scheduled_emails")
    op.drop_index("ix_scheduled_emails_status_scheduled_for", table_name="scheduled_emails")
    op.drop_table("scheduled_emails")
    op.drop_table("users")
