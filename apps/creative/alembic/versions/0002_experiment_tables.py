"""experiments, winner selection and outbound events

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "experiments",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("ad_group_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("test_type", sa.Text(), nullable=False),
        sa.Column("statistical_method", sa.Text(), nullable=False),
        sa.Column("primary_metric", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="PLANNING"),
        sa.Column("stop_reason", sa.Text(), nullable=True),
        sa.Column("hypothesis", sa.Text(), nullable=True),
        sa.Column("config_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("required_sample_size", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("estimated_duration_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("analysis_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("recommendation_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_analyzed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["ad_group_id"], ["ad_groups.id"]),
    )
    op.create_index("ix_experiments_status", "experiments", ["status"])

    op.create_table(
        "experiment_variants",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("experiment_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("role", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("creative_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("traffic_percent", sa.Float(), nullable=False),
        sa.Column(
            "content_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["experiment_id"], ["experiments.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["creative_id"], ["creatives.id"]),
        sa.UniqueConstraint(
            "experiment_id", "role", name="uq_experiment_variants_experiment_role"
        ),
    )

    op.create_table(
        "experiment_status_transitions",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("experiment_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("from_status", sa.Text(), nullable=True),
        sa.Column("to_status", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["experiment_id"], ["experiments.id"], ondelete="CASCADE"
        ),
    )
    op.create_index(
        "ix_experiment_status_transitions_experiment",
        "experiment_status_transitions",
        ["experiment_id", "created_at"],
    )

    op.create_table(
        "selection_results",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("experiment_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("decision", sa.Text(), nullable=False),
        sa.Column("winner", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("risk_level", sa.Text(), nullable=False),
        sa.Column("criteria_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("analysis_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("recommendation_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "implementation_status", sa.Text(), nullable=False, server_default="PENDING"
        ),
        sa.Column("implementation_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_monitoring_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["experiment_id"], ["experiments.id"], ondelete="CASCADE"
        ),
    )
    op.create_index(
        "ix_selection_results_experiment",
        "selection_results",
        ["experiment_id", "created_at"],
    )

    op.create_table(
        "outbound_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("channel", sa.Text(), nullable=False),
        sa.Column("entity_type", sa.Text(), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_outbound_events_channel_delivered",
        "outbound_events",
        ["channel", "delivered_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbound_events_channel_delivered", table_name="outbound_events")
    op.drop_table("outbound_events")
    op.drop_index("ix_selection_results_experiment", table_name="selection_results")
    op.drop_table("selection_results")
    op.drop_index(
        "ix_experiment_status_transitions_experiment",
        table_name="experiment_status_transitions",
    )
    op.drop_table("experiment_status_transitions")
    op.drop_table("experiment_variants")
    op.drop_index("ix_experiments_status", table_name="experiments")
    op.drop_table("experiments")
