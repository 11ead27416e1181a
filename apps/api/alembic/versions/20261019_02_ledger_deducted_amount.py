"""Record how many points each expired entry actually removed."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_02"
down_revision: Union[str, None] = "20261019_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("points_ledger_entries") as batch_op:
        batch_op.add_column(sa.Column("deducted_amount", sa.Integer(), nullable=True))

    # Entries swept before this column existed are assumed fully deducted.
    op.execute("UPDATE points_ledger_entries SET deducted_amount = amount WHERE deducted = true")

    with op.batch_alter_table("points_ledger_entries") as batch_op:
        batch_op.create_check_constraint(
            "ck_points_ledger_entries_deducted_amount_within_amount",
            "deducted_amount IS NULL OR (deducted_amount >= 0 AND deducted_amount <= amount)",
        )


def downgrade() -> None:
    with op.batch_alter_table("points_ledger_entries") as batch_op:
        batch_op.drop_constraint("ck_points_ledger_entries_deducted_amount_within_amount", type_="check")
        batch_op.drop_column("deducted_amount")
