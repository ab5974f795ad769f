from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.succeeded, JobStatus.failed)

    @property
    def rank(self) -> int:
        # succeeded and failed are both terminal and share a rank
        return {"queued": 0, "running": 1, "succeeded": 2, "failed": 2}[self.value]


class StemStage(str, Enum):
    ensemble_wait = "ensemble_wait"
    leadback_wait = "leadback_wait"
    dereverb_wait = "dereverb_wait"
    denoise_wait = "denoise_wait"
    upload_outputs = "upload_outputs"
    done = "done"

    @property
    def rank(self) -> int:
        return list(StemStage).index(self)


class StemHashes(BaseModel):
    """Upstream job handles; a set hash means that sub-job was already dispatched."""

    model_config = ConfigDict(frozen=True)

    ensemble: Optional[str] = None
    leadback: Optional[str] = None
    dereverb_lead: Optional[str] = None
    dereverb_back: Optional[str] = None
    denoise_lead: Optional[str] = None
    denoise_back: Optional[str] = None


class StemUrls(BaseModel):
    """Provider-hosted intermediate results."""

    model_config = ConfigDict(frozen=True)

    ensemble_vocal: Optional[str] = None
    instrumental: Optional[str] = None
    lead_vocal: Optional[str] = None
    back_vocal: Optional[str] = None
    lead_dereverbed: Optional[str] = None
    back_dereverbed: Optional[str] = None
    raw_main_vocal: Optional[str] = None
    raw_back_vocal: Optional[str] = None


class StemOutputs(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw_main_vocal_asset_id: Optional[uuid.UUID] = None
    raw_back_vocal_asset_id: Optional[uuid.UUID] = None
    instrumental_asset_id: Optional[uuid.UUID] = None

    @property
    def complete(self) -> bool:
        return all(
            v is not None
            for v in (self.raw_main_vocal_asset_id, self.raw_back_vocal_asset_id, self.instrumental_asset_id)
        )


class StemJobState(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: uuid.UUID
    user_id: str
    input_asset_id: uuid.UUID
    voice_profile_id: Optional[str] = None

    status: JobStatus = JobStatus.queued
    stage: StemStage = StemStage.ensemble_wait
    progress: int = 0
    message: str = ""
    error_message: Optional[str] = None

    hashes: StemHashes = StemHashes()
    urls: StemUrls = StemUrls()
    outputs: StemOutputs = StemOutputs()

    version: int = 1
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def with_hashes(self, **hashes: str) -> "StemJobState":
        return self.model_copy(update={"hashes": self.hashes.model_copy(update=hashes)})

    def with_urls(self, **urls: str) -> "StemJobState":
        return self.model_copy(update={"urls": self.urls.model_copy(update=urls)})

    def with_outputs(self, **outputs: uuid.UUID) -> "StemJobState":
        return self.model_copy(update={"outputs": self.outputs.model_copy(update=outputs)})


class StemJobCreateIn(BaseModel):
    user_id: str
    input_asset_id: uuid.UUID
    voice_profile_id: Optional[str] = None


class StemJobOut(BaseModel):
    job_id: str
    user_id: str
    input_asset_id: str
    voice_profile_id: Optional[str]
    status: JobStatus
    stage: StemStage
    progress: int
    message: str
    error_message: Optional[str]
    hashes: StemHashes
    urls: StemUrls
    outputs: StemOutputs
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_state(cls, state: StemJobState) -> "StemJobOut":
        return cls(
            job_id=str(state.job_id),
            user_id=state.user_id,
            input_asset_id=str(state.input_asset_id),
            voice_profile_id=state.voice_profile_id,
            status=state.status,
            stage=state.stage,
            progress=state.progress,
            message=state.message,
            error_message=state.error_message,
            hashes=state.hashes,
            urls=state.urls,
            outputs=state.outputs,
            version=state.version,
            created_at=state.created_at,
            updated_at=state.updated_at,
        )
