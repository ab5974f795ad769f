import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from stemflow.api.v1.router import router as v1_router
from stemflow.core import settings

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(title="stemflow API", version="0.1.0")
app.include_router(v1_router, prefix="/v1")

Path(settings.STORAGE_DIR).mkdir(parents=True, exist_ok=True)
app.mount(settings.STORAGE_BASE_URL, StaticFiles(directory=settings.STORAGE_DIR), name="storage")
