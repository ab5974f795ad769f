from fastapi import APIRouter
from stemflow.api.v1 import stem_jobs

router = APIRouter()
router.include_router(stem_jobs.router, prefix="/stem-jobs", tags=["stem-jobs"])
