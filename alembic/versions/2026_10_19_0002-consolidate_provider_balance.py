"""Consolidate legacy provider balance columns into provider_balance.

Databases migrated from the old dashboard carry the provider balance under
one of several names. The first legacy column present (in LEGACY_COLUMNS
order) holds the live value. It is copied into provider_balance wherever
that is still zero, and then every legacy column is dropped.

Revision ID: 2026_10_19_0002
Revises: 2026_10_19_0001
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0002"
down_revision: str | None = "2026_10_19_0001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

LEGACY_COLUMNS = ("balance_provider", "wallet_balance", "saldo_proveedor")


def upgrade() -> None:
    """Copy the live legacy value, then drop every legacy column."""
    columns = {col["name"] for col in sa.inspect(op.get_bind()).get_columns("profiles")}
    present = [name for name in LEGACY_COLUMNS if name in columns]
    if not present:
        return

    source = present[0]
    op.execute(
        sa.text(
            f"UPDATE profiles SET provider_balance = GREATEST(COALESCE({source}, 0), 0) "
            "WHERE provider_balance = 0"
        )
    )
    for name in present:
        op.drop_column("profiles", name)


def downgrade() -> None:
    """Legacy columns are not restored; provider_balance stays canonical."""
    pass
