import uuid
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stemflow.core import get_db
from stemflow.core.errors import NotFoundError, SeparationConfigError, StaleJobStateError
from stemflow.schemas.stem_job import StemJobCreateIn, StemJobOut
from stemflow.separation.client import SeparationClient
from stemflow.services.stem_job_service import StemJobService
router = APIRouter()


def get_separation_client() -> SeparationClient:
    return SeparationClient()


@router.post("", response_model=StemJobOut)
async def create_stem_job(
    body: StemJobCreateIn,
    db: AsyncSession = Depends(get_db),
    client: SeparationClient = Depends(get_separation_client),
) -> StemJobOut:
    svc = StemJobService(db, client=client)
    try:
        state = await svc.create_job(
            user_id=body.user_id,
            input_asset_id=body.input_asset_id,
            voice_profile_id=body.voice_profile_id,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.user_message) from e
    except SeparationConfigError as e:
        raise HTTPException(status_code=503, detail=e.user_message) from e
    return StemJobOut.from_state(state)

@router.get("/{job_id}", response_model=StemJobOut)
async def get_stem_job(
    job_id: uuid.UUID,
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
) -> StemJobOut:
    svc = StemJobService(db)
    try:
        return StemJobOut.from_state(await svc.get_job(user_id=user_id, job_id=job_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail="stem job not found") from e

@router.post("/{job_id}/advance", response_model=StemJobOut)
async def advance_stem_job(
    job_id: uuid.UUID,
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
    client: SeparationClient = Depends(get_separation_client),
) -> StemJobOut:
    svc = StemJobService(db, client=client)
    try:
        return StemJobOut.from_state(await svc.advance(user_id=user_id, job_id=job_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail="stem job not found") from e
    except StaleJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except SeparationConfigError as e:
        raise HTTPException(status_code=503, detail=e.user_message) from e

@router.get("/{job_id}/history", response_model=list[StemJobOut])
async def get_stem_job_history(
    job_id: uuid.UUID,
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
) -> list[StemJobOut]:
    svc = StemJobService(db)
    try:
        history = await svc.list_history(user_id=user_id, job_id=job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail="stem job not found") from e
    return [StemJobOut.from_state(s) for s in history]
