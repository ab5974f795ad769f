import uuid
from datetime import datetime
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from stemflow.models.base import Base, JsonDoc

class StemJob(Base):
    """Current state of one stem separation job, updated by compare-and-swap on ``version``."""

    __tablename__ = "stem_jobs"
    __table_args__ = (
        CheckConstraint("status IN ('queued', 'running', 'succeeded', 'failed')", name="ck_stem_jobs_status"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_stem_jobs_progress_range"),
        CheckConstraint("version >= 1", name="ck_stem_jobs_version_pos"),
        Index("ix_stem_jobs_user_id_created_at", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    input_asset_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("audio_assets.id"), nullable=False)
    voice_profile_id: Mapped[str] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(Text, nullable=False)
    stage: Mapped[str] = mapped_column(Text, nullable=False)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    error_message: Mapped[str] = mapped_column(Text, nullable=True)

    hashes_json: Mapped[dict] = mapped_column(JsonDoc, nullable=False)
    urls_json: Mapped[dict] = mapped_column(JsonDoc, nullable=False)
    outputs_json: Mapped[dict] = mapped_column(JsonDoc, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    lease_token: Mapped[str] = mapped_column(Text, nullable=True)
    lease_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    snapshots: Mapped[list["StemJobSnapshot"]] = relationship(back_populates="job", cascade="all, delete-orphan")


class StemJobSnapshot(Base):
    """Append-only history; ``seq`` is the job version the snapshot was written at."""

    __tablename__ = "stem_job_snapshots"
    __table_args__ = (
        UniqueConstraint("job_id", "seq", name="uq_stem_job_snapshots_job_seq"),
        Index("ix_stem_job_snapshots_job_seq", "job_id", "seq"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("stem_jobs.id", ondelete="CASCADE"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    state_json: Mapped[dict] = mapped_column(JsonDoc, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    job: Mapped["StemJob"] = relationship(back_populates="snapshots")
