from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from stemflow.core.errors import MaterializeError
from stemflow.repos.audio_asset_repo import AudioAssetRepo
from stemflow.schemas.stem_job import StemJobState
from stemflow.separation.client import SeparationClient
from stemflow.services.storage_service import StorageService, StoredObject, stem_output_key


@dataclass(frozen=True)
class OutputSlot:
    output_field: str   # attribute on StemOutputs
    url_field: str      # attribute on StemUrls holding the provider URL
    stem_name: str      # used in the storage key and file name
    label: str          # human-readable, for messages


OUTPUT_SLOTS: tuple[OutputSlot, ...] = (
    OutputSlot("raw_main_vocal_asset_id", "raw_main_vocal", "raw-main-vocal", "main vocal"),
    OutputSlot("raw_back_vocal_asset_id", "raw_back_vocal", "raw-back-vocal", "back vocal"),
    OutputSlot("instrumental_asset_id", "instrumental", "instrumental", "instrumental"),
)


@dataclass(frozen=True)
class MaterializedStem:
    """Bytes already written to owned storage; the asset row is created later, with the state write."""
    slot: OutputSlot
    stored: StoredObject

    @property
    def file_name(self) -> str:
        return f"{self.slot.stem_name}.wav"


def _audio_content_type(content_type: str) -> str:
    return content_type if "audio" in (content_type or "").lower() else "audio/wav"


class OutputMaterializer:
    """Copies provider-hosted results into platform storage, one slot per call."""

    def __init__(self, *, client: SeparationClient, storage: StorageService):
        self.client = client
        self.storage = storage
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def next_slot(self, state: StemJobState) -> Optional[OutputSlot]:
        for slot in OUTPUT_SLOTS:
            if getattr(state.outputs, slot.output_field) is None:
                return slot
        return None

    async def fetch_and_store(self, state: StemJobState, slot: OutputSlot) -> MaterializedStem:
        source_url = getattr(state.urls, slot.url_field)
        user_message = f"Could not save the {slot.label} stem to your library. Please try again."
        if not source_url:
            raise MaterializeError(f"no source url for {slot.stem_name}", user_message=user_message)

        try:
            data, content_type = await self.client.download(source_url)
        except MaterializeError as e:
            raise MaterializeError(str(e), user_message=user_message) from e
        if not data:
            raise MaterializeError(f"{slot.stem_name} download was empty", user_message=user_message)

        key = stem_output_key(user_id=state.user_id, job_id=str(state.job_id), stem_name=slot.stem_name)
        try:
            stored = await self.storage.save_bytes(data, key=key, mime=_audio_content_type(content_type))
        except OSError as e:
            raise MaterializeError(f"could not write {key}: {e}", user_message=user_message) from e

        self.logger.info("Stored %s for job %s (%d bytes)", slot.stem_name, state.job_id, stored.size)
        return MaterializedStem(slot=slot, stored=stored)

    async def register(
        self,
        assets: AudioAssetRepo,
        state: StemJobState,
        stem: MaterializedStem,
    ) -> uuid.UUID:
        asset = await assets.create(
            user_id=state.user_id,
            voice_profile_id=state.voice_profile_id,
            kind="generated_output",
            file_name=stem.file_name,
            file_size=stem.stored.size,
            mime=stem.stored.mime,
            storage_key=stem.stored.key,
            storage_url=stem.stored.url,
        )
        return asset.id
