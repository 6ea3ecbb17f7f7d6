"""Users, CLI device authorizations, CLI tokens and audit log

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


audit_actor_type = sa.Enum("USER", "CLI", "SYSTEM", name="audit_actor_type")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("picture", sa.String(length=2048), nullable=True),
        sa.Column("refresh_token_hash", sa.String(length=64), nullable=True),
        sa.Column("refresh_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_external_id", "users", ["external_id"], unique=True)
    op.create_index("ix_users_refresh_token_hash", "users", ["refresh_token_hash"])

    op.create_table(
        "cli_device_authorizations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("device_code_hash", sa.String(length=64), nullable=False),
        sa.Column("user_code", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_poll_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("origin_address", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("device_code_hash", name="uq_cli_device_authorizations_device_code_hash"),
        sa.UniqueConstraint("user_code", name="uq_cli_device_authorizations_user_code"),
    )
    op.create_index("ix_cli_device_authorizations_user_id", "cli_device_authorizations", ["user_id"])
    op.create_index("ix_cli_device_authorizations_expires_at", "cli_device_authorizations", ["expires_at"])
    op.create_index(
        "ix_cli_device_authorizations_origin_created",
        "cli_device_authorizations",
        ["origin_address", "created_at"],
    )

    op.create_table(
        "cli_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=True),
        sa.Column("device_name", sa.String(length=255), nullable=True),
        sa.Column("device_fingerprint", sa.String(length=64), nullable=True),
        sa.Column("origin_address", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("token_hash", name="uq_cli_tokens_token_hash"),
    )
    op.create_index("ix_cli_tokens_user_id", "cli_tokens", ["user_id"])
    op.create_index("ix_cli_tokens_created_at", "cli_tokens", ["created_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    audit_actor_type.drop(op.get_bind(), checkfirst=True)

    op.drop_index("ix_cli_tokens_created_at", table_name="cli_tokens")
    op.drop_index("ix_cli_tokens_user_id", table_name="cli_tokens")
    op.drop_table("cli_tokens")

    op.drop_index("ix_cli_device_authorizations_origin_created", table_name="cli_device_authorizations")
    op.drop_index("ix_cli_device_authorizations_expires_at", table_name="cli_device_authorizations")
    op.drop_index("ix_cli_device_authorizations_user_id", table_name="cli_device_authorizations")
    op.drop_table("cli_device_authorizations")

    op.drop_index("ix_users_refresh_token_hash", table_name="users")
    op.drop_index("ix_users_external_id", table_name="users")
    op.drop_table("users")
