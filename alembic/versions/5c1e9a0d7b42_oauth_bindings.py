"""oauth bindings

Revision ID: 5c1e9a0d7b42
Revises:
Create Date: 2026-10-16 09:12:40.118302

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e9a0d7b42"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "oauth_bindings",
        sa.Column("guid", sa.String(512), primary_key=True),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("provider_id", sa.String(512), nullable=False),
        sa.Column("remote_handle", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_oauth_bindings_identity",
        "oauth_bindings",
        ["provider", "provider_id"],
        unique=True,
    )
    op.create_index(
        "idx_oauth_bindings_remote_handle",
        "oauth_bindings",
        ["remote_handle"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_table("oauth_bindings")
