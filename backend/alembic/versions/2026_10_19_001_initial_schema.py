"""Initial schema: single-file and bulk analysis tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # analysis_sessions
    op.create_table(
        "analysis_sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, index=True),
        sa.Column("session_name", sa.String(255), nullable=False),
        sa.Column("source_language", sa.String(10), nullable=False, server_default="en"),
        sa.Column("audio_file_name", sa.String(255), nullable=True),
        sa.Column("audio_file_size", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "idx_analysis_sessions_file", "analysis_sessions",
        ["user_id", "audio_file_name", "audio_file_size"],
    )

    # analysis_results (at most one per session)
    op.create_table(
        "analysis_results",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "session_id", sa.Integer(),
            sa.ForeignKey("analysis_sessions.id", ondelete="CASCADE"),
            nullable=False, unique=True,
        ),
        sa.Column("transcription", sa.Text(), nullable=True),
        sa.Column("translation", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("agent_coaching", sa.Text(), nullable=True),
        sa.Column("customer_sentiment", sa.String(20), nullable=True),
        sa.Column("customer_sentiment_score", sa.Float(), nullable=True),
        sa.Column("customer_sentiment_justification", sa.Text(), nullable=True),
        sa.Column("agent_sentiment", sa.String(20), nullable=True),
        sa.Column("agent_sentiment_score", sa.Float(), nullable=True),
        sa.Column("agent_sentiment_justification", sa.Text(), nullable=True),
        sa.Column("agent_sentiment_details", postgresql.JSONB(), nullable=True),
        sa.Column("keywords", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # bulk_analysis_sessions
    op.create_table(
        "bulk_analysis_sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, index=True),
        sa.Column("session_name", sa.String(255), nullable=False),
        sa.Column("source_language", sa.String(10), nullable=False, server_default="en"),
        sa.Column("total_files", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_files", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_files", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="processing"),
        sa.Column("avg_overall_score", sa.Float(), nullable=True),
        sa.Column("avg_call_opening_score", sa.Float(), nullable=True),
        sa.Column("avg_call_closing_score", sa.Float(), nullable=True),
        sa.Column("avg_speaking_quality_score", sa.Float(), nullable=True),
        sa.Column("positive_sentiment_count", sa.Integer(), server_default="0"),
        sa.Column("neutral_sentiment_count", sa.Integer(), server_default="0"),
        sa.Column("negative_sentiment_count", sa.Integer(), server_default="0"),
        sa.Column("positive_sentiment_percentage", sa.Float(), nullable=True),
        sa.Column("batch_summary", sa.Text(), nullable=True),
        sa.Column("key_insights", postgresql.JSONB(), nullable=True),
        sa.Column("top_keywords", postgresql.JSONB(), nullable=True),
        sa.Column("recommendations", sa.Text(), nullable=True),
        sa.Column("total_processing_time", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('processing', 'completed', 'failed', 'cancelled')",
            name="ck_bulk_sessions_status",
        ),
    )
    op.create_index("idx_bulk_sessions_user_created", "bulk_analysis_sessions", ["user_id", "created_at"])

    # bulk_file_results
    op.create_table(
        "bulk_file_results",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "bulk_session_id", sa.Integer(),
            sa.ForeignKey("bulk_analysis_sessions.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("processing_order", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("transcription", sa.Text(), nullable=True),
        sa.Column("translation", sa.Text(), nullable=True),
        sa.Column("call_summary", sa.Text(), nullable=True),
        sa.Column("agent_coaching", sa.Text(), nullable=True),
        sa.Column("overall_score", sa.Float(), nullable=True),
        sa.Column("call_opening_score", sa.Float(), nullable=True),
        sa.Column("call_closing_score", sa.Float(), nullable=True),
        sa.Column("speaking_quality_score", sa.Float(), nullable=True),
        sa.Column("customer_sentiment", sa.String(20), nullable=True),
        sa.Column("customer_sentiment_score", sa.Float(), nullable=True),
        sa.Column("customer_sentiment_justification", sa.Text(), nullable=True),
        sa.Column("agent_sentiment", sa.String(20), nullable=True),
        sa.Column("agent_sentiment_score", sa.Float(), nullable=True),
        sa.Column("agent_sentiment_justification", sa.Text(), nullable=True),
        sa.Column("call_opening_analysis", postgresql.JSONB(), nullable=True),
        sa.Column("call_closing_analysis", postgresql.JSONB(), nullable=True),
        sa.Column("speaking_quality_analysis", postgresql.JSONB(), nullable=True),
        sa.Column("keywords", postgresql.JSONB(), nullable=True),
        sa.Column("processing_time", sa.Float(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_bulk_file_results_status",
        ),
    )
    op.create_index(
        "idx_bulk_file_results_order", "bulk_file_results",
        ["bulk_session_id", "processing_order"],
    )


def downgrade() -> None:
    op.drop_table("bulk_file_results")
    op.drop_table("bulk_analysis_sessions")
    op.drop_table("analysis_results")
    op.drop_table("analysis_sessions")
