"""Create loyalty cards, points ledger, rewards and redemptions."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


card_status = sa.Enum("active", "inactive", name="loyalty_card_status")
redemption_status = sa.Enum("completed", name="loyalty_redemption_status")


def upgrade() -> None:
    op.create_table(
        "loyalty_cards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("uid", sa.String(length=64), nullable=False),
        sa.Column("holder_name", sa.String(), nullable=True),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", card_status, nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("points_balance >= 0", name="ck_loyalty_cards_points_balance_non_negative"),
    )
    op.create_index("ix_loyalty_cards_uid", "loyalty_cards", ["uid"], unique=True)

    op.create_table(
        "points_ledger_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "card_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_cards.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deducted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deducted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reference", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="ck_points_ledger_entries_amount_positive"),
    )
    op.create_index("ix_points_ledger_entries_card_id", "points_ledger_entries", ["card_id"])
    op.create_index(
        "ix_points_ledger_entries_card_sweep",
        "points_ledger_entries",
        ["card_id", "deducted", "expires_at"],
    )

    op.create_table(
        "loyalty_rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("points_required", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("stock_tracked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("points_required > 0", name="ck_loyalty_rewards_points_required_positive"),
        sa.CheckConstraint("quantity IS NULL OR quantity >= 0", name="ck_loyalty_rewards_quantity_non_negative"),
    )

    op.create_table(
        "loyalty_redemptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "card_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_cards.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "reward_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_rewards.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("points_used", sa.Integer(), nullable=False),
        sa.Column("status", redemption_status, nullable=False, server_default="completed"),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("client_reference", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("points_used > 0", name="ck_loyalty_redemptions_points_used_positive"),
        sa.UniqueConstraint("card_id", "client_reference", name="uq_loyalty_redemptions_card_reference"),
    )
    op.create_index("ix_loyalty_redemptions_card_id", "loyalty_redemptions", ["card_id"])


def downgrade() -> None:
    op.drop_index("ix_loyalty_redemptions_card_id", table_name="loyalty_redemptions")
    op.drop_table("loyalty_redemptions")
    op.drop_table("loyalty_rewards")
    op.drop_index("ix_points_ledger_entries_card_sweep", table_name="points_ledger_entries")
    op.drop_index("ix_points_ledger_entries_card_id", table_name="points_ledger_entries")
    op.drop_table("points_ledger_entries")
    op.drop_index("ix_loyalty_cards_uid", table_name="loyalty_cards")
    op.drop_table("loyalty_cards")

    bind = op.get_bind()
    redemption_status.drop(bind, checkfirst=True)
    card_status.drop(bind, checkfirst=True)
