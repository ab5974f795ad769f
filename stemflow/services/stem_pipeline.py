from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from stemflow.core.errors import ClassificationError, DispatchError, MaterializeError
from stemflow.schemas.stem_job import JobStatus, StemJobState, StemStage
from stemflow.separation.classifier import (
    classify_lead_and_back,
    classify_vocal_and_instrumental,
    pick_single_vocal_like,
)
from stemflow.separation.client import (
    DENOISE,
    DEREVERB,
    ENSEMBLE,
    LEAD_BACK,
    AudioSource,
    PollResult,
    PollStatus,
    SeparationClient,
    SeparationMode,
)
from stemflow.services.output_materializer import MaterializedStem, OutputMaterializer, OutputSlot

InputSourceLoader = Callable[[StemJobState], Awaitable[AudioSource]]

FAILED_MESSAGE = "Stem separation failed."
COMPLETED_MESSAGE = "Stem separation completed."
SAVING_MESSAGE = "Saving stems to your library..."


@dataclass(frozen=True)
class StepOutcome:
    state: StemJobState
    pending_stem: Optional[MaterializedStem] = None


@dataclass(frozen=True)
class VocalPass:
    """
    A stage that runs one single-output provider mode over the lead vocal,
    then over the back vocal. The back job is only dispatched once the lead
    result is stored.
    """
    name: str
    mode: SeparationMode
    lead_hash: str
    back_hash: str
    lead_source: str
    back_source: str
    lead_result: str
    back_result: str
    next_stage: StemStage
    lead_message: str
    back_message: str
    next_message: str
    # milestones: lead dispatched, lead waiting, back dispatched, back waiting, stage done
    progress: tuple[int, int, int, int, int]


DEREVERB_PASS = VocalPass(
    name="de-reverb",
    mode=DEREVERB,
    lead_hash="dereverb_lead",
    back_hash="dereverb_back",
    lead_source="lead_vocal",
    back_source="back_vocal",
    lead_result="lead_dereverbed",
    back_result="back_dereverbed",
    next_stage=StemStage.denoise_wait,
    lead_message="Removing echo and reverb (lead vocal)...",
    back_message="Removing echo and reverb (back vocal)...",
    next_message="Applying denoise (lead vocal)...",
    progress=(58, 64, 70, 74, 80),
)

DENOISE_PASS = VocalPass(
    name="denoise",
    mode=DENOISE,
    lead_hash="denoise_lead",
    back_hash="denoise_back",
    lead_source="lead_dereverbed",
    back_source="back_dereverbed",
    lead_result="raw_main_vocal",
    back_result="raw_back_vocal",
    next_stage=StemStage.upload_outputs,
    lead_message="Applying denoise (lead vocal)...",
    back_message="Applying denoise (back vocal)...",
    next_message=SAVING_MESSAGE,
    progress=(82, 86, 90, 92, 94),
)


def running(state: StemJobState, *, progress: int, message: str, **updates) -> StemJobState:
    return state.model_copy(
        update={
            "status": JobStatus.running,
            "progress": max(state.progress, progress),
            "message": message,
            **updates,
        }
    )


def fail_state(state: StemJobState, error_message: str) -> StemJobState:
    return state.model_copy(
        update={
            "status": JobStatus.failed,
            "stage": StemStage.done,
            "progress": max(state.progress, 1),
            "message": FAILED_MESSAGE,
            "error_message": state.error_message or error_message,
        }
    )


def is_stale(state: StemJobState, *, now: datetime, max_age_seconds: int) -> bool:
    if state.is_terminal:
        return False
    return now - state.updated_at > timedelta(seconds=max_age_seconds)


def _upstream_failure(result: PollResult, what: str) -> str:
    detail = result.message.strip() if result.message else ""
    if result.status is PollStatus.not_found:
        detail = detail or "the job was not found"
    return f"The separation service rejected the audio during {what}: {detail or 'processing failed'}."


class StemPipeline:
    """
    The stem separation state machine.

    ``step`` looks at one state, performs at most one externally visible
    action (a dispatch, a poll-driven transition or one materialization)
    and returns the next state. It never persists anything; the caller owns
    the job store and the per-job lease. PollError propagates so the caller
    can leave the job untouched and retry on the next advance.
    """

    def __init__(
        self,
        *,
        client: SeparationClient,
        materializer: OutputMaterializer,
        input_source: InputSourceLoader,
    ):
        self.client = client
        self.materializer = materializer
        self.input_source = input_source
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._handlers: dict[StemStage, Callable[[StemJobState], Awaitable[StepOutcome]]] = {
            StemStage.ensemble_wait: self._ensemble,
            StemStage.leadback_wait: self._lead_back,
            StemStage.dereverb_wait: lambda s: self._vocal_pass(s, DEREVERB_PASS),
            StemStage.denoise_wait: lambda s: self._vocal_pass(s, DENOISE_PASS),
            StemStage.upload_outputs: self._upload_outputs,
            StemStage.done: self._done,
        }

    async def step(self, state: StemJobState) -> StepOutcome:
        if state.is_terminal:
            return StepOutcome(state)
        try:
            outcome = await self._handlers[state.stage](state)
        except (DispatchError, ClassificationError, MaterializeError) as e:
            self.logger.info("Stem job %s failed at %s: %s", state.job_id, state.stage.value, e)
            return StepOutcome(fail_state(state, e.user_message))

        if outcome.state.stage is not state.stage:
            self.logger.info(
                "Stem job %s: %s -> %s", state.job_id, state.stage.value, outcome.state.stage.value
            )
        return outcome

    def apply_materialized(self, state: StemJobState, slot: OutputSlot, asset_id: uuid.UUID) -> StemJobState:
        return self._succeed_if_complete(state.with_outputs(**{slot.output_field: asset_id}))

    @staticmethod
    def _succeed_if_complete(state: StemJobState) -> StemJobState:
        if not state.outputs.complete:
            return state
        return state.model_copy(
            update={
                "status": JobStatus.succeeded,
                "stage": StemStage.done,
                "progress": 100,
                "message": COMPLETED_MESSAGE,
            }
        )

    # ---------- stages ----------

    async def _ensemble(self, state: StemJobState) -> StepOutcome:
        if state.hashes.ensemble is None:
            source = await self.input_source(state)
            job_hash = await self.client.dispatch(source, ENSEMBLE)
            return StepOutcome(
                running(
                    state,
                    progress=8,
                    message="Separating main vocals and instrumentals...",
                    hashes=state.hashes.model_copy(update={"ensemble": job_hash}),
                )
            )

        result = await self.client.poll(state.hashes.ensemble)
        if result.status in (PollStatus.failed, PollStatus.not_found):
            return StepOutcome(fail_state(state, _upstream_failure(result, "main vocal separation")))
        if result.status is PollStatus.waiting:
            return StepOutcome(
                running(state, progress=16, message=result.message or "Separating main vocals and instrumentals...")
            )

        split = classify_vocal_and_instrumental(result.files)
        if split.instrumental is None:
            names = ", ".join(f.download_name for f in result.files)
            raise ClassificationError(
                f"no instrumental among: {names}",
                user_message=f"Could not identify the vocal and instrumental stems. Files: {names}",
            )

        job_hash = await self.client.dispatch(split.vocal.url, LEAD_BACK)
        nxt = running(
            state,
            progress=32,
            message="Separating lead and back vocals...",
            stage=StemStage.leadback_wait,
        )
        nxt = nxt.with_hashes(leadback=job_hash)
        return StepOutcome(nxt.with_urls(ensemble_vocal=split.vocal.url, instrumental=split.instrumental.url))

    async def _lead_back(self, state: StemJobState) -> StepOutcome:
        if state.hashes.leadback is None:
            return StepOutcome(fail_state(state, "Missing lead/back separation handle."))

        result = await self.client.poll(state.hashes.leadback)
        if result.status in (PollStatus.failed, PollStatus.not_found):
            return StepOutcome(fail_state(state, _upstream_failure(result, "lead/back vocal separation")))
        if result.status is PollStatus.waiting:
            return StepOutcome(running(state, progress=44, message=result.message or "Separating lead and back vocals..."))

        split = classify_lead_and_back(result.files)
        nxt = running(
            state,
            progress=56,
            message=DEREVERB_PASS.lead_message,
            stage=StemStage.dereverb_wait,
        )
        return StepOutcome(nxt.with_urls(lead_vocal=split.lead.url, back_vocal=split.back.url))

    async def _vocal_pass(self, state: StemJobState, vp: VocalPass) -> StepOutcome:
        lead_source = getattr(state.urls, vp.lead_source)
        back_source = getattr(state.urls, vp.back_source)
        if not lead_source or not back_source:
            return StepOutcome(fail_state(state, f"Missing vocal inputs for {vp.name}."))

        p_lead_sent, p_lead_wait, p_back_sent, p_back_wait, p_done = vp.progress
        lead_hash = getattr(state.hashes, vp.lead_hash)
        back_hash = getattr(state.hashes, vp.back_hash)
        lead_result = getattr(state.urls, vp.lead_result)

        if lead_hash is None:
            job_hash = await self.client.dispatch(lead_source, vp.mode)
            nxt = running(state, progress=p_lead_sent, message=vp.lead_message)
            return StepOutcome(nxt.with_hashes(**{vp.lead_hash: job_hash}))

        if lead_result is None:
            result = await self.client.poll(lead_hash)
            if result.status in (PollStatus.failed, PollStatus.not_found):
                return StepOutcome(fail_state(state, _upstream_failure(result, f"lead vocal {vp.name}")))
            if result.status is PollStatus.waiting:
                return StepOutcome(running(state, progress=p_lead_wait, message=vp.lead_message))

            picked = self._single_vocal(result, f"{vp.name} lead vocal")
            nxt = state.with_urls(**{vp.lead_result: picked})
            if back_hash is not None:
                return StepOutcome(running(nxt, progress=p_back_wait, message=vp.back_message))
            job_hash = await self.client.dispatch(back_source, vp.mode)
            nxt = running(nxt, progress=p_back_sent, message=vp.back_message)
            return StepOutcome(nxt.with_hashes(**{vp.back_hash: job_hash}))

        if back_hash is None:
            job_hash = await self.client.dispatch(back_source, vp.mode)
            nxt = running(state, progress=p_back_sent, message=vp.back_message)
            return StepOutcome(nxt.with_hashes(**{vp.back_hash: job_hash}))

        result = await self.client.poll(back_hash)
        if result.status in (PollStatus.failed, PollStatus.not_found):
            return StepOutcome(fail_state(state, _upstream_failure(result, f"back vocal {vp.name}")))
        if result.status is PollStatus.waiting:
            return StepOutcome(running(state, progress=p_back_wait, message=vp.back_message))

        picked = self._single_vocal(result, f"{vp.name} back vocal")
        nxt = running(state, progress=p_done, message=vp.next_message, stage=vp.next_stage)
        return StepOutcome(nxt.with_urls(**{vp.back_result: picked}))

    async def _upload_outputs(self, state: StemJobState) -> StepOutcome:
        missing = [f for f in ("raw_main_vocal", "raw_back_vocal", "instrumental") if not getattr(state.urls, f)]
        if missing:
            return StepOutcome(fail_state(state, f"Missing final stem URLs: {', '.join(missing)}."))

        slot = self.materializer.next_slot(state)
        if slot is None:
            # every slot already registered; only the status flip is left
            return StepOutcome(self._succeed_if_complete(state))

        stem = await self.materializer.fetch_and_store(state, slot)
        progress = {"raw_main_vocal_asset_id": 94, "raw_back_vocal_asset_id": 97}.get(slot.output_field, 99)
        return StepOutcome(running(state, progress=progress, message=SAVING_MESSAGE), pending_stem=stem)

    async def _done(self, state: StemJobState) -> StepOutcome:
        return StepOutcome(state)

    # ---------- helpers ----------

    @staticmethod
    def _single_vocal(result: PollResult, what: str) -> str:
        picked = pick_single_vocal_like(result.files)
        if picked is None:
            raise ClassificationError(
                f"no output for {what}",
                user_message=f"Could not identify the {what} stem: the separation returned no files.",
            )
        return picked.url
