"""create creative tables

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ad_groups",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("campaign_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("rotation_strategy", sa.Text(), nullable=False, server_default="OPTIMIZE"),
        sa.Column("rotation_effectiveness", sa.Float(), nullable=True),
        sa.Column("last_rotation_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )

    op.create_table(
        "creatives",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("ad_group_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("campaign_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("creative_type", sa.Text(), nullable=False, server_default="RESPONSIVE"),
        sa.Column("status", sa.Text(), nullable=False, server_default="ENABLED"),
        sa.Column(
            "content_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column("final_url", sa.Text(), nullable=True),
        sa.Column("rotation_weight", sa.Float(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["ad_group_id"], ["ad_groups.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_creatives_ad_group_status", "creatives", ["ad_group_id", "status"])

    op.create_table(
        "metric_snapshots",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("creative_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("impressions", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("clicks", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("conversions", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("cost", sa.Numeric(), nullable=False, server_default="0"),
        sa.Column("revenue", sa.Numeric(), nullable=False, server_default="0"),
        sa.Column("frequency", sa.Float(), nullable=True),
        sa.Column("reach_percent", sa.Float(), nullable=True),
        sa.Column("quality_score", sa.Float(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["creative_id"], ["creatives.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "creative_id", "snapshot_date", name="uq_metric_snapshots_creative_date"
        ),
    )
    op.create_index(
        "ix_metric_snapshots_creative_date",
        "metric_snapshots",
        ["creative_id", "snapshot_date"],
    )

    op.create_table(
        "fatigue_verdicts",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("creative_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("analysis_date", sa.Date(), nullable=False),
        sa.Column("level", sa.Text(), nullable=False),
        sa.Column("score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("signal_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("verdict_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["creative_id"], ["creatives.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "creative_id", "analysis_date", name="uq_fatigue_verdicts_creative_date"
        ),
    )

    op.create_table(
        "rotation_schedules",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("ad_group_id", sa.Uuid(as_uuid=True), nullable=False, unique=True),
        sa.Column("strategy", sa.Text(), nullable=False),
        sa.Column("weights_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("next_review_date", sa.Date(), nullable=True),
        sa.Column(
            "recommendation_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["ad_group_id"], ["ad_groups.id"], ondelete="CASCADE"),
    )


def downgrade() -> None:
    op.drop_table("rotation_schedules")
    op.drop_table("fatigue_verdicts")
    op.drop_index("ix_metric_snapshots_creative_date", table_name="metric_snapshots")
    op.drop_table("metric_snapshots")
    op.drop_index("ix_creatives_ad_group_status", table_name="creatives")
    op.drop_table("creatives")
    op.drop_table("ad_groups")
