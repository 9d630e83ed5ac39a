"""create tracked_entities, extraction_jobs, visibility_analyses

Revision ID: a7c3e91b5d20
Revises:
Create Date: 2026-10-16 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision = "a7c3e91b5d20"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tracked_entities",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("url", sa.String(2048), server_default="", nullable=False),
        sa.Column("category", sa.String(255), nullable=True),
        sa.Column("location", JSONB(), nullable=True),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("automation_enabled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tier", sa.String(20), server_default="basic", nullable=False),
        sa.Column("enrichment_level", sa.Integer(), nullable=True),
        sa.Column("published_record_id", sa.String(64), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tracked_entities_status", "tracked_entities", ["status"])
    op.create_index("ix_tracked_entities_next_run_at", "tracked_entities", ["next_run_at"])

    op.create_table(
        "extraction_jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), server_default="queued", nullable=False),
        sa.Column("progress", sa.Float(), server_default="0", nullable=False),
        sa.Column("pages_discovered", sa.Integer(), server_default="0", nullable=False),
        sa.Column("pages_processed", sa.Integer(), server_default="0", nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["entity_id"], ["tracked_entities.id"], ondelete="RESTRICT"),
    )
    op.create_index("ix_extraction_jobs_entity_id", "extraction_jobs", ["entity_id"])
    op.create_index("ix_extraction_jobs_status", "extraction_jobs", ["status"])
    op.create_index("ix_extraction_jobs_entity_created", "extraction_jobs", ["entity_id", "created_at"])
    op.create_index(
        "uq_extraction_jobs_entity_in_flight",
        "extraction_jobs",
        ["entity_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('queued', 'running')"),
    )

    op.create_table(
        "visibility_analyses",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("entity_name", sa.String(255), server_default="", nullable=False),
        sa.Column("visibility_score", sa.Float(), server_default="0", nullable=False),
        sa.Column("mention_rate", sa.Float(), server_default="0", nullable=False),
        sa.Column("sentiment_score", sa.Float(), nullable=True),
        sa.Column("accuracy_score", sa.Float(), nullable=True),
        sa.Column("avg_rank_position", sa.Float(), nullable=True),
        sa.Column("observations", JSONB(), nullable=True),
        sa.Column("leaderboard_input", JSONB(), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["entity_id"], ["tracked_entities.id"], ondelete="RESTRICT"),
    )
    op.create_index("ix_visibility_analyses_entity_id", "visibility_analyses", ["entity_id"])
    op.create_index(
        "ix_visibility_analyses_entity_generated",
        "visibility_analyses",
        ["entity_id", "generated_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_visibility_analyses_entity_generated", table_name="visibility_analyses")
    op.drop_index("ix_visibility_analyses_entity_id", table_name="visibility_analyses")
    op.drop_table("visibility_analyses")

    op.drop_index("uq_extraction_jobs_entity_in_flight", table_name="extraction_jobs")
    op.drop_index("ix_extraction_jobs_entity_created", table_name="extraction_jobs")
    op.drop_index("ix_extraction_jobs_status", table_name="extraction_jobs")
    op.drop_index("ix_extraction_jobs_entity_id", table_name="extraction_jobs")
    op.drop_table("extraction_jobs")

    op.drop_index("ix_tracked_entities_next_run_at", table_name="tracked_entities")
    op.drop_index("ix_tracked_entities_status", table_name="tracked_entities")
    op.drop_table("tracked_entities")
