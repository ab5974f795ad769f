"""audio assets, stem jobs and stem job snapshots

Revision ID: 0001_stem_jobs
Revises:
Create Date: 2026-10-17
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_stem_jobs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "audio_assets",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("voice_profile_id", sa.Text(), nullable=True),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("file_name", sa.Text(), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("mime", sa.Text(), nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("storage_url", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("kind IN ('song_input', 'generated_output')", name="ck_audio_assets_kind"),
    )
    op.create_index("ix_audio_assets_user_id", "audio_assets", ["user_id"])

    op.create_table(
        "stem_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("input_asset_id", sa.Uuid(), sa.ForeignKey("audio_assets.id"), nullable=False),
        sa.Column("voice_profile_id", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("stage", sa.Text(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("hashes_json", postgresql.JSONB(), nullable=False),
        sa.Column("urls_json", postgresql.JSONB(), nullable=False),
        sa.Column("outputs_json", postgresql.JSONB(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("lease_token", sa.Text(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("status IN ('queued', 'running', 'succeeded', 'failed')", name="ck_stem_jobs_status"),
        sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_stem_jobs_progress_range"),
        sa.CheckConstraint("version >= 1", name="ck_stem_jobs_version_pos"),
    )
    op.create_index("ix_stem_jobs_user_id_created_at", "stem_jobs", ["user_id", "created_at"])

    op.create_table(
        "stem_job_snapshots",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("stem_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("state_json", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("job_id", "seq", name="uq_stem_job_snapshots_job_seq"),
    )
    op.create_index("ix_stem_job_snapshots_job_seq", "stem_job_snapshots", ["job_id", "seq"])


def downgrade() -> None:
    op.drop_index("ix_stem_job_snapshots_job_seq", table_name="stem_job_snapshots")
    op.drop_table("stem_job_snapshots")
    op.drop_index("ix_stem_jobs_user_id_created_at", table_name="stem_jobs")
    op.drop_table("stem_jobs")
    op.drop_index("ix_audio_assets_user_id", table_name="audio_assets")
    op.drop_table("audio_assets")
