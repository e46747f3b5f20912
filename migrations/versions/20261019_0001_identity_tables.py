"""Account and registered client tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _soft_delete_columns() -> list[sa.Column]:
    """Columns shared through SoftDeleteMixin."""
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    """Create identity tables referenced by stored authorizations."""
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("client_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("login_id", sa.String(length=320), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=30), nullable=True),
        sa.Column("name", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
        sa.Column("is_email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_soft_delete_columns(),
        sa.PrimaryKeyConstraint("id", name="pk_accounts"),
    )
    op.create_index("ix_accounts_client_id_email", "accounts", ["client_id", "email"])
    op.create_index("ix_accounts_login_id_deleted_at", "accounts", ["login_id", "deleted_at"])

    op.create_table(
        "registered_clients",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("client_id", sa.String(length=128), nullable=False),
        sa.Column("client_name", sa.String(length=255), nullable=False),
        sa.Column(
            "redirect_uris",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "scopes", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")
        ),
        *_soft_delete_columns(),
        sa.PrimaryKeyConstraint("id", name="pk_registered_clients"),
        sa.UniqueConstraint("client_id", name="uq_registered_clients_client_id"),
    )


def downgrade() -> None:
    """Drop identity tables."""
    op.drop_table("registered_clients")
    op.drop_index("ix_accounts_login_id_deleted_at", table_name="accounts")
    op.drop_index("ix_accounts_client_id_email", table_name="accounts")
    op.drop_table("accounts")
