from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stemflow.core.errors import StaleJobStateError
from stemflow.models import StemJob, StemJobSnapshot
from stemflow.schemas.stem_job import (
    JobStatus,
    StemHashes,
    StemJobState,
    StemOutputs,
    StemStage,
    StemUrls,
)


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_state(row: StemJob) -> StemJobState:
    return StemJobState(
        job_id=row.id,
        user_id=row.user_id,
        input_asset_id=row.input_asset_id,
        voice_profile_id=row.voice_profile_id,
        status=JobStatus(row.status),
        stage=StemStage(row.stage),
        progress=row.progress,
        message=row.message,
        error_message=row.error_message,
        hashes=StemHashes.model_validate(row.hashes_json or {}),
        urls=StemUrls.model_validate(row.urls_json or {}),
        outputs=StemOutputs.model_validate(row.outputs_json or {}),
        version=row.version,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _state_columns(state: StemJobState) -> dict:
    return {
        "status": state.status.value,
        "stage": state.stage.value,
        "progress": state.progress,
        "message": state.message,
        "error_message": state.error_message,
        "hashes_json": state.hashes.model_dump(mode="json"),
        "urls_json": state.urls.model_dump(mode="json"),
        "outputs_json": state.outputs.model_dump(mode="json"),
        "updated_at": state.updated_at,
    }


class StemJobRepo:
    """
    Keyed job record plus an append-only snapshot log.

    Every state write is a compare-and-swap on ``stem_jobs.version`` and
    appends a ``stem_job_snapshots`` row whose ``seq`` is the new version.
    The lease columns serialize advance calls for one job across processes.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, state: StemJobState) -> StemJobState:
        row = StemJob(
            id=state.job_id,
            user_id=state.user_id,
            input_asset_id=state.input_asset_id,
            voice_profile_id=state.voice_profile_id,
            version=1,
            created_at=state.created_at,
            **_state_columns(state),
        )
        self.db.add(row)
        await self.db.flush()

        created = state.model_copy(update={"version": 1})
        await self._append_snapshot(created)
        return created

    async def get(self, job_id: uuid.UUID) -> StemJobState | None:
        res = await self.db.execute(
            select(StemJob)
            .where(StemJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        row = res.scalar_one_or_none()
        return _to_state(row) if row is not None else None

    async def claim_lease(
        self,
        job_id: uuid.UUID,
        *,
        expected_version: int,
        token: str,
        ttl_seconds: int,
        now: datetime | None = None,
    ) -> bool:
        """Take the per-job lease if the job is unchanged and nobody holds a live lease."""
        now = now or datetime.now(timezone.utc)
        res = await self.db.execute(
            update(StemJob)
            .where(
                StemJob.id == job_id,
                StemJob.version == expected_version,
                or_(StemJob.lease_token.is_(None), StemJob.lease_expires_at < now),
            )
            .values(lease_token=token, lease_expires_at=now + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    async def release_lease(self, job_id: uuid.UUID, *, token: str) -> None:
        await self.db.execute(
            update(StemJob)
            .where(StemJob.id == job_id, StemJob.lease_token == token)
            .values(lease_token=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )

    async def save(self, state: StemJobState, *, lease_token: str | None) -> StemJobState:
        """
        Write ``state`` if the stored version still equals ``state.version``
        and the caller still holds ``lease_token``. Releases the lease.
        """
        conditions = [StemJob.id == state.job_id, StemJob.version == state.version]
        if lease_token is None:
            conditions.append(StemJob.lease_token.is_(None))
        else:
            conditions.append(StemJob.lease_token == lease_token)

        next_version = state.version + 1
        res = await self.db.execute(
            update(StemJob)
            .where(*conditions)
            .values(
                version=next_version,
                lease_token=None,
                lease_expires_at=None,
                **_state_columns(state),
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise StaleJobStateError(f"stem job {state.job_id} moved past version {state.version}")

        saved = state.model_copy(update={"version": next_version})
        await self._append_snapshot(saved)
        return saved

    async def list_snapshots(self, job_id: uuid.UUID) -> list[StemJobState]:
        res = await self.db.execute(
            select(StemJobSnapshot.state_json)
            .where(StemJobSnapshot.job_id == job_id)
            .order_by(StemJobSnapshot.seq.asc())
        )
        return [StemJobState.model_validate(doc) for doc in res.scalars().all()]

    async def _append_snapshot(self, state: StemJobState) -> None:
        self.db.add(
            StemJobSnapshot(
                job_id=state.job_id,
                seq=state.version,
                state_json=state.model_dump(mode="json"),
            )
        )
        await self.db.flush()
