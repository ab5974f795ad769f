import os
import tempfile

# settings are read at import time
_STORAGE_TMP = tempfile.mkdtemp(prefix="stemflow-storage-")
os.environ.setdefault("DATABASE_URL_ASYNC", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STORAGE_DIR", _STORAGE_TMP)
os.environ.setdefault("MVSEP_API_TOKEN", "test-token")

import itertools
import uuid
from collections import defaultdict

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from stemflow.core.errors import MaterializeError, PollError
from stemflow.models import Base
from stemflow.repos.audio_asset_repo import AudioAssetRepo
from stemflow.separation.client import PollResult, PollStatus, SeparationFile
from stemflow.services.storage_service import StorageService


def sep_file(name: str, *, url: str | None = None, title: str = "", type_: str = "") -> SeparationFile:
    label = f"{name} {title} {type_}".lower()
    return SeparationFile(url=url or f"https://files.example/{name}", download_name=name, label=label)


# what each mode returns when it finishes
DEFAULT_OUTPUTS = {
    "ensemble": ["song_vocals.wav", "song_instrumental.wav"],
    "lead_back": ["song_lead_vocals.wav", "song_back_vocals.wav"],
    "dereverb": ["vocals_noreverb.wav", "reverb_other.wav"],
    "denoise": ["vocals_dry.wav", "noise_other.wav"],
}


class FakeSeparationClient:
    """
    Scripted stand-in for SeparationClient.

    Every dispatch returns a fresh hash "<mode>-<n>". Polls answer with
    ``statuses[hash]`` when set (a PollStatus, a PollResult or an exception
    to raise), otherwise ``default_status``; finished jobs return the files
    in ``outputs[mode]`` with URLs scoped to the hash.
    """

    def __init__(self):
        self.dispatches: list[tuple[object, str]] = []
        self.polls: list[str] = []
        self.downloads: list[str] = []
        self.default_status = PollStatus.done
        self.statuses: dict[str, object] = {}
        self.outputs: dict[str, list[str]] = dict(DEFAULT_OUTPUTS)
        self.download_bodies: dict[str, bytes] = {}
        self.failing_downloads: set[str] = set()
        self.dispatch_error: Exception | None = None
        self.config_error: Exception | None = None
        self._counter = defaultdict(itertools.count)

    def require_configured(self) -> str:
        if self.config_error is not None:
            raise self.config_error
        return "test-token"

    async def dispatch(self, source, mode) -> str:
        self.require_configured()
        if self.dispatch_error is not None:
            raise self.dispatch_error
        self.dispatches.append((source, mode.name))
        return f"{mode.name}-{next(self._counter[mode.name])}"

    async def poll(self, job_hash: str) -> PollResult:
        self.polls.append(job_hash)
        scripted = self.statuses.get(job_hash, self.default_status)
        if isinstance(scripted, Exception):
            raise scripted
        if isinstance(scripted, PollResult):
            return scripted
        if scripted is not PollStatus.done:
            return PollResult(status=scripted, message="")
        mode = job_hash.rsplit("-", 1)[0]
        files = [sep_file(name, url=f"https://files.example/{job_hash}/{name}") for name in self.outputs[mode]]
        return PollResult(status=PollStatus.done, files=files)

    async def download(self, url: str) -> tuple[bytes, str]:
        self.downloads.append(url)
        if url in self.failing_downloads:
            raise MaterializeError(f"download failed for {url}")
        return self.download_bodies.get(url, b"RIFF....WAVEfmt stem-bytes"), "audio/wav"

    def dispatched_modes(self) -> list[str]:
        return [mode for _, mode in self.dispatches]


@pytest.fixture
def fake_client() -> FakeSeparationClient:
    return FakeSeparationClient()


@pytest.fixture
def poll_error() -> PollError:
    return PollError("connection reset")


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stemflow.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path) -> StorageService:
    return StorageService(tmp_path / "storage", "/storage")


@pytest.fixture
def seed_input_asset(session_factory):
    async def _seed(storage: StorageService, *, user_id: str = "user-1", data: bytes = b"RIFF input song"):
        stored = await storage.save_bytes(data, key=f"inputs/{user_id}/{uuid.uuid4().hex}.wav", mime="audio/wav")
        async with session_factory() as session:
            async with session.begin():
                asset = await AudioAssetRepo(session).create(
                    user_id=user_id,
                    kind="song_input",
                    file_name="my-song.wav",
                    file_size=stored.size,
                    mime=stored.mime,
                    storage_key=stored.key,
                    storage_url=stored.url,
                )
        return asset.id

    return _seed
