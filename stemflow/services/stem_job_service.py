from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from stemflow.core.config import settings
from stemflow.core.errors import DispatchError, NotFoundError, PollError
from stemflow.repos.audio_asset_repo import AudioAssetRepo
from stemflow.repos.stem_job_repo import StemJobRepo
from stemflow.schemas.stem_job import JobStatus, StemJobState, StemStage
from stemflow.separation.client import AudioSource, AudioUpload, SeparationClient
from stemflow.services.output_materializer import OutputMaterializer
from stemflow.services.stem_pipeline import StemPipeline, fail_state, is_stale
from stemflow.services.storage_service import StorageService


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StemJobService:
    """
    Entry points for stem separation jobs: create, read, advance.

    Each advance runs in three short transactions: load + claim the job
    lease, then (outside any transaction) one pipeline step against the
    provider, then write the new state with a compare-and-swap on the
    version the lease was claimed at.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        client: SeparationClient | None = None,
        storage: StorageService | None = None,
    ):
        self.db = db
        self.assets = AudioAssetRepo(db)
        self.jobs = StemJobRepo(db)

        self.storage = storage or StorageService()
        self.client = client or SeparationClient()
        self.materializer = OutputMaterializer(client=self.client, storage=self.storage)
        self.pipeline = StemPipeline(
            client=self.client,
            materializer=self.materializer,
            input_source=self._load_input_source,
        )
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def create_job(
        self,
        *,
        user_id: str,
        input_asset_id: uuid.UUID,
        voice_profile_id: str | None = None,
    ) -> StemJobState:
        # no job row for a deployment that could never dispatch it
        self.client.require_configured()

        async with self.db.begin():
            asset = await self.assets.get_owned(input_asset_id, user_id=user_id, kind="song_input")
            if asset is None:
                raise NotFoundError("input asset not found", user_message="Singing record not found.")

            now = _now()
            created = await self.jobs.create(
                StemJobState(
                    job_id=uuid.uuid4(),
                    user_id=user_id,
                    input_asset_id=asset.id,
                    voice_profile_id=voice_profile_id,
                    status=JobStatus.queued,
                    stage=StemStage.ensemble_wait,
                    progress=0,
                    message="Queued for stem separation.",
                    created_at=now,
                    updated_at=now,
                )
            )

        self.logger.info("Created stem job %s for asset %s", created.job_id, input_asset_id)
        # first advance dispatches the ensemble separation
        return await self.advance(user_id=user_id, job_id=created.job_id)

    async def get_job(self, *, user_id: str, job_id: uuid.UUID) -> StemJobState:
        async with self.db.begin():
            return await self._get_owned(user_id, job_id)

    async def advance(self, *, user_id: str, job_id: uuid.UUID) -> StemJobState:
        async with self.db.begin():
            current = await self._get_owned(user_id, job_id)
            if current.is_terminal:
                return current
            token = uuid.uuid4().hex
            claimed = await self.jobs.claim_lease(
                job_id,
                expected_version=current.version,
                token=token,
                ttl_seconds=settings.STEM_JOB_LEASE_SECONDS,
            )

        if not claimed:
            self.logger.warning("Stem job %s is already being advanced; returning current state", job_id)
            return current

        try:
            outcome = await self.pipeline.step(current)
        except PollError as e:
            self.logger.warning("Transient poll failure for stem job %s: %s", job_id, e)
            await self._release(job_id, token)
            return current
        except Exception:
            await self._release(job_id, token)
            raise

        async with self.db.begin():
            nxt = outcome.state
            if outcome.pending_stem is not None:
                asset_id = await self.materializer.register(self.assets, current, outcome.pending_stem)
                nxt = self.pipeline.apply_materialized(nxt, outcome.pending_stem.slot, asset_id)
            return await self.jobs.save(self._stamp(current, nxt), lease_token=token)

    async def expire_if_stale(
        self,
        *,
        user_id: str,
        job_id: uuid.UUID,
        max_age_seconds: int | None = None,
        now: datetime | None = None,
    ) -> StemJobState:
        """Fail a running job whose last write is older than ``max_age_seconds``."""
        max_age = max_age_seconds if max_age_seconds is not None else settings.STEM_JOB_STALE_AFTER_SECONDS
        async with self.db.begin():
            current = await self._get_owned(user_id, job_id)
            if not is_stale(current, now=now or _now(), max_age_seconds=max_age):
                return current
            token = uuid.uuid4().hex
            if not await self.jobs.claim_lease(
                job_id,
                expected_version=current.version,
                token=token,
                ttl_seconds=settings.STEM_JOB_LEASE_SECONDS,
            ):
                return current
            failed = fail_state(current, "Stem separation timed out. Please start a new job.")
            self.logger.info("Expired stale stem job %s at %s", job_id, current.stage.value)
            return await self.jobs.save(self._stamp(current, failed), lease_token=token)

    async def list_history(self, *, user_id: str, job_id: uuid.UUID) -> list[StemJobState]:
        async with self.db.begin():
            await self._get_owned(user_id, job_id)
            return await self.jobs.list_snapshots(job_id)

    # ---------- internals ----------

    async def _get_owned(self, user_id: str, job_id: uuid.UUID) -> StemJobState:
        state = await self.jobs.get(job_id)
        if state is None or state.user_id != user_id:
            raise NotFoundError("stem job not found")
        return state

    async def _release(self, job_id: uuid.UUID, token: str) -> None:
        async with self.db.begin():
            await self.jobs.release_lease(job_id, token=token)

    async def _load_input_source(self, state: StemJobState) -> AudioSource:
        async with self.db.begin():
            asset = await self.assets.get(state.input_asset_id)
        if asset is None:
            raise DispatchError("input asset vanished", user_message="The uploaded recording no longer exists.")
        try:
            data = await self.storage.read_bytes(asset.storage_key, max_bytes=settings.MAX_INPUT_BYTES)
        except (OSError, ValueError) as e:
            raise DispatchError(
                f"could not read input {asset.storage_key}: {e}",
                user_message="Could not read the uploaded recording. Please upload it again.",
            ) from e
        return AudioUpload(data=data, file_name=asset.file_name, mime=asset.mime)

    @staticmethod
    def _stamp(previous: StemJobState, nxt: StemJobState) -> StemJobState:
        # progress never goes backwards and stays in 0..100
        progress = max(previous.progress, min(100, max(0, int(round(nxt.progress)))))
        return nxt.model_copy(update={"progress": progress, "updated_at": _now(), "version": previous.version})
