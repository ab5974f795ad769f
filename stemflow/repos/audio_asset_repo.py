from __future__ import annotations

import uuid
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stemflow.models import AudioAsset


class AudioAssetRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        *,
        user_id: str,
        kind: str,
        file_name: str,
        file_size: int,
        mime: str,
        storage_key: str,
        storage_url: str,
        voice_profile_id: str | None = None,
    ) -> AudioAsset:
        asset = AudioAsset(
            user_id=user_id,
            voice_profile_id=voice_profile_id,
            kind=kind,
            file_name=file_name,
            file_size=file_size,
            mime=mime,
            storage_key=storage_key,
            storage_url=storage_url,
        )
        self.db.add(asset)
        await self.db.flush()  # assign asset.id
        return asset

    async def get(self, asset_id: uuid.UUID) -> AudioAsset | None:
        res = await self.db.execute(select(AudioAsset).where(AudioAsset.id == asset_id))
        return res.scalar_one_or_none()

    async def get_owned(self, asset_id: uuid.UUID, *, user_id: str, kind: str) -> AudioAsset | None:
        res = await self.db.execute(
            select(AudioAsset).where(
                AudioAsset.id == asset_id,
                AudioAsset.user_id == user_id,
                AudioAsset.kind == kind,
            )
        )
        return res.scalar_one_or_none()
