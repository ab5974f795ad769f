from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import anyio

from stemflow.core import settings


@dataclass(frozen=True)
class StoredObject:
    """
    key: relative path under STORAGE_DIR (e.g. "stems/<user>/<job>/instrumental.wav")
    abs_path: absolute filesystem path to the stored file
    url: public URL path (e.g. "/storage/stems/<user>/<job>/instrumental.wav")
    mime: MIME type string used for Content-Type and stored in DB
    size: number of bytes written
    """
    key: str
    abs_path: str
    url: str
    mime: str
    size: int


_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9_.\-]")


def safe_segment(value: str) -> str:
    cleaned = _UNSAFE_SEGMENT.sub("_", str(value)).strip("._")
    return cleaned or "_"


def stem_output_key(*, user_id: str, job_id: str, stem_name: str) -> str:
    return f"stems/{safe_segment(user_id)}/{safe_segment(job_id)}/{safe_segment(stem_name)}.wav"


class StorageService:
    """
    Local filesystem storage for platform-owned audio.

    Guarantees:
    - Keys are normalized and cannot escape STORAGE_DIR
    - Writes atomically (tmp file + replace), so rewriting the same key is safe
    - Produces a URL your client can GET directly (served under STORAGE_BASE_URL)
    """

    def __init__(
        self,
        storage_dir: str | Path | None = None,
        base_url: str | None = None,
    ):
        self.storage_dir = Path(storage_dir or settings.STORAGE_DIR)
        self.base_url = (base_url or settings.STORAGE_BASE_URL).rstrip("/")
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    # ---------- public API ----------

    async def save_bytes(self, data: bytes, *, key: str, mime: str) -> StoredObject:
        abs_path = self.abs_path(key)
        await anyio.to_thread.run_sync(self._write_atomic, abs_path, data)
        return StoredObject(
            key=self._norm(key),
            abs_path=str(abs_path),
            url=self.public_url(key),
            mime=mime,
            size=len(data),
        )

    async def read_bytes(self, key: str, *, max_bytes: Optional[int] = None) -> bytes:
        abs_path = self.abs_path(key)
        size = (await anyio.to_thread.run_sync(os.stat, abs_path)).st_size
        if max_bytes is not None and size > max_bytes:
            raise ValueError(f"object {key} is {size} bytes, limit is {max_bytes}")
        return await anyio.Path(abs_path).read_bytes()

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{self._norm(key)}"

    def abs_path(self, key: str) -> Path:
        base = self.storage_dir.resolve()
        target = (base / self._norm(key)).resolve()
        if not target.is_relative_to(base):
            raise ValueError(f"storage key escapes storage dir: {key}")
        return target

    # ---------- internals ----------

    @staticmethod
    def _norm(key: str) -> str:
        return key.replace("\\", "/").lstrip("/")

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
