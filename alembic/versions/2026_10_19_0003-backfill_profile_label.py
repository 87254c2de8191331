"""Backfill inventory_accounts.profile_label from composite logins.

Profile-slot accounts used to embed their profile in login_user as
``base::slot_<label>::<suffix>``. The label now has its own column; this
copies it out for rows that only carry the encoded form. login_user is left
as is because it remains the per-product unique key.

Revision ID: 2026_10_19_0003
Revises: 2026_10_19_0002
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0003"
down_revision: str | None = "2026_10_19_0002"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Extract <label> from base::slot_<label>::<suffix>."""
    op.execute(
        sa.text(
            "UPDATE inventory_accounts "
            "SET profile_label = NULLIF(btrim(split_part(split_part(login_user, '::slot_', 2), '::', 1)), '') "
            "WHERE profile_label IS NULL AND strpos(login_user, '::slot_') > 0"
        )
    )


def downgrade() -> None:
    """Nothing to undo; the composite logins were never modified."""
    pass
