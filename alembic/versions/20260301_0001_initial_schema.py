"""Initial schema for lead traders, raw ingests and derived position state.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-03-01 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tracked leads
    op.create_table(
        "lead_traders",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False, server_default="binance"),
        sa.Column("nickname", sa.String(128), nullable=True),
        sa.Column("position_show", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Append-only payload snapshots
    op.create_table(
        "raw_ingests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("lead_id", sa.String(64), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False, server_default="binance"),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("positions_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("time_range", sa.String(8), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["lead_id"], ["lead_traders.id"]),
    )
    op.create_index("idx_raw_ingests_lead_fetched", "raw_ingests", ["lead_id", "fetched_at"])
    op.create_index("idx_raw_ingests_fetched", "raw_ingests", ["fetched_at"])

    # Normalized order history
    op.create_table(
        "trade_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_key", sa.String(255), nullable=False),
        sa.Column("lead_id", sa.String(64), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False, server_default="binance"),
        sa.Column("event_type", sa.String(16), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("side", sa.String(8), nullable=True),
        sa.Column("position_side", sa.String(8), nullable=True),
        sa.Column("price", sa.Numeric(30, 10), nullable=False),
        sa.Column("amount", sa.Numeric(30, 10), nullable=False),
        sa.Column("amount_asset", sa.String(32), nullable=True),
        sa.Column("realized_pnl", sa.Numeric(30, 10), nullable=True),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["lead_id"], ["lead_traders.id"]),
        sa.UniqueConstraint("event_key", name="uq_trade_events_event_key"),
    )
    op.create_index("idx_trade_events_lead_time", "trade_events", ["lead_id", "event_time"])
    op.create_index("idx_trade_events_symbol_time", "trade_events", ["symbol", "event_time"])

    # Per-(lead, symbol) position state
    op.create_table(
        "position_states",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("lead_id", sa.String(64), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False, server_default="binance"),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("status", sa.String(8), nullable=False),
        sa.Column("direction", sa.String(8), nullable=True),
        sa.Column("amount", sa.Numeric(30, 10), nullable=False),
        sa.Column("leverage", sa.Integer(), nullable=True),
        sa.Column("entry_price", sa.Numeric(30, 10), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("estimated_open_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("open_event_id", sa.String(255), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("close_event_id", sa.String(255), nullable=True),
        sa.Column("source", sa.String(8), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["lead_id"], ["lead_traders.id"]),
        sa.UniqueConstraint("lead_id", "symbol", name="uq_position_states_lead_symbol"),
    )
    op.create_index("idx_position_states_status", "position_states", ["status"])
    op.create_index(
        "idx_position_states_symbol_status", "position_states", ["symbol", "status"]
    )

    # Lot transitions
    op.create_table(
        "position_transitions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("transition_key", sa.String(320), nullable=False),
        sa.Column("lead_id", sa.String(64), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("kind", sa.String(8), nullable=False),
        sa.Column("direction", sa.String(8), nullable=True),
        sa.Column("amount", sa.Numeric(30, 10), nullable=False),
        sa.Column("price", sa.Numeric(30, 10), nullable=True),
        sa.Column("order_id", sa.String(255), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", sa.String(8), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["lead_id"], ["lead_traders.id"]),
        sa.UniqueConstraint("transition_key", name="uq_position_transitions_key"),
    )
    op.create_index(
        "idx_position_transitions_occurred", "position_transitions", ["occurred_at"]
    )
    op.create_index(
        "idx_position_transitions_lead_occurred",
        "position_transitions",
        ["lead_id", "occurred_at"],
    )

    # Trader ranking attributes
    op.create_table(
        "trader_scores",
        sa.Column("lead_id", sa.String(64), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False, server_default="binance"),
        sa.Column("score_30d", sa.Float(), nullable=False, server_default="0"),
        sa.Column("quality_score", sa.Integer(), nullable=True),
        sa.Column("confidence", sa.String(8), nullable=True),
        sa.Column("win_rate", sa.Float(), nullable=True),
        sa.Column("sample_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("trader_weight", sa.Float(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lead_id"),
        sa.ForeignKeyConstraint(["lead_id"], ["lead_traders.id"]),
    )


def downgrade() -> None:
    op.drop_table("trader_scores")
    op.drop_index("idx_position_transitions_lead_occurred", table_name="position_transitions")
    op.drop_index("idx_position_transitions_occurred", table_name="position_transitions")
    op.drop_table("position_transitions")
    op.drop_index("idx_position_states_symbol_status", table_name="position_states")
    op.drop_index("idx_position_states_status", table_name="position_states")
    op.drop_table("position_states")
    op.drop_index("idx_trade_events_symbol_time", table_name="trade_events")
    op.drop_index("idx_trade_events_lead_time", table_name="trade_events")
    op.drop_table("trade_events")
    op.drop_index("idx_raw_ingests_fetched", table_name="raw_ingests")
    op.drop_index("idx_raw_ingests_lead_fetched", table_name="raw_ingests")
    op.drop_table("raw_ingests")
    op.drop_table("lead_traders")
