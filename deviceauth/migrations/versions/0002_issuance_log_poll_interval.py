"""Device code issuance log, advertised poll interval, keep CLI tokens on user delete

Revision ID: 0002_issuance_log_poll_interval
Revises: 0001_initial
Create Date: 2026-10-25 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_issuance_log_poll_interval"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "cli_device_issuances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("origin_address", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_cli_device_issuances_origin_created",
        "cli_device_issuances",
        ["origin_address", "created_at"],
    )
    op.create_index("ix_cli_device_issuances_created_at", "cli_device_issuances", ["created_at"])

    # Seed the log so limits already in flight survive the upgrade.
    op.execute(
        """
        INSERT INTO cli_device_issuances (origin_address, created_at)
        SELECT origin_address, created_at
        FROM cli_device_authorizations
        WHERE origin_address IS NOT NULL
        """
    )
    op.drop_index("ix_cli_device_authorizations_origin_created", table_name="cli_device_authorizations")

    op.add_column(
        "cli_device_authorizations",
        sa.Column("poll_interval", sa.Integer(), nullable=False, server_default=sa.text("2")),
    )

    # 0001 left the constraint unnamed; this is the name PostgreSQL gave it.
    with op.batch_alter_table("cli_tokens") as batch_op:
        batch_op.drop_constraint("cli_tokens_user_id_fkey", type_="foreignkey")
        batch_op.create_foreign_key(
            "cli_tokens_user_id_fkey",
            "users",
            ["user_id"],
            ["id"],
            ondelete="RESTRICT",
        )


def downgrade() -> None:
    with op.batch_alter_table("cli_tokens") as batch_op:
        batch_op.drop_constraint("cli_tokens_user_id_fkey", type_="foreignkey")
        batch_op.create_foreign_key(
            "cli_tokens_user_id_fkey",
            "users",
            ["user_id"],
            ["id"],
            ondelete="CASCADE",
        )

    op.drop_column("cli_device_authorizations", "poll_interval")
    op.create_index(
        "ix_cli_device_authorizations_origin_created",
        "cli_device_authorizations",
        ["origin_address", "created_at"],
    )

    op.drop_index("ix_cli_device_issuances_created_at", table_name="cli_device_issuances")
    op.drop_index("ix_cli_device_issuances_origin_created", table_name="cli_device_issuances")
    op.drop_table("cli_device_issuances")
