from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

import anyio
import httpx

from stemflow.core.config import settings
from stemflow.core.errors import DispatchError, MaterializeError, PollError, SeparationConfigError


class PollStatus(str, Enum):
    waiting = "waiting"
    failed = "failed"
    not_found = "not_found"
    done = "done"


# provider statuses that mean "still working"
WAITING_STATUSES = frozenset({"waiting", "processing", "distributing", "merging"})


@dataclass(frozen=True)
class SeparationMode:
    """One provider processing mode: ``sep_type`` plus its free-form options."""
    name: str
    sep_type: int
    add_opt1: Optional[Union[int, float, str]] = None
    add_opt2: Optional[Union[int, float, str]] = None
    add_opt3: Optional[Union[int, float, str]] = None
    output_format: int = 1  # wav


ENSEMBLE = SeparationMode("ensemble", sep_type=40, add_opt1=81)
LEAD_BACK = SeparationMode("lead_back", sep_type=49, add_opt1=6, add_opt2=0)
DEREVERB = SeparationMode("dereverb", sep_type=9, add_opt1=16, add_opt2=0.3)
DENOISE = SeparationMode("denoise", sep_type=9, add_opt1=15, add_opt2=0.3)


@dataclass(frozen=True)
class AudioUpload:
    data: bytes
    file_name: str
    mime: str = "audio/wav"


AudioSource = Union[str, AudioUpload]


@dataclass(frozen=True)
class SeparationFile:
    """
    url: provider-hosted result location
    download_name: file name the provider suggests
    label: lowercased "<download> <title> <type>" used by the classifier
    """
    url: str
    download_name: str
    label: str


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    message: str = ""
    files: list[SeparationFile] = field(default_factory=list)
    raw: Any = None


def _str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _clean_url(value: str) -> str:
    return value.replace("\\/", "/").strip()


def parse_files(raw_files: Any) -> list[SeparationFile]:
    if not isinstance(raw_files, list):
        return []
    out: list[SeparationFile] = []
    for item in raw_files:
        if not isinstance(item, dict):
            continue
        url = _clean_url(_str(item.get("url") or item.get("link")))
        if not url:
            continue
        download = _str(item.get("download") or item.get("name") or item.get("filename") or "output.wav")
        label = f"{download} {_str(item.get('title'))} {_str(item.get('type'))}".lower()
        out.append(SeparationFile(url=url, download_name=download, label=label))
    return out


def normalize_status(raw_status: str) -> PollStatus:
    status = (raw_status or "not_found").strip().lower()
    if status == "done":
        return PollStatus.done
    if status == "failed":
        return PollStatus.failed
    if status == "not_found":
        return PollStatus.not_found
    # WAITING_STATUSES and anything unrecognised: keep polling
    return PollStatus.waiting


class SeparationClient:
    """
    Wrapper around the MVSEP separation API.

    - dispatch() creates one upstream job and returns its hash
    - poll() reads the job status and normalizes it to PollStatus
    - download() fetches a finished result file

    No retries here; the orchestrator retries by being advanced again.
    """

    def __init__(
        self,
        *,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        download_timeout: Optional[float] = None,
    ):
        self.api_token = (api_token if api_token is not None else settings.MVSEP_API_TOKEN or "").strip()
        self.base_url = (base_url or settings.MVSEP_BASE_URL).rstrip("/")
        self.timeout = float(timeout or settings.MVSEP_TIMEOUT_SECONDS)
        self.download_timeout = float(download_timeout or settings.MVSEP_DOWNLOAD_TIMEOUT_SECONDS)
        self._http = http
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def _send(self, timeout: float, method: str, url: str, **kwargs: Any) -> httpx.Response:
        # httpx timeouts are per read/write; the whole call gets one deadline so a
        # step can never outlive the job lease
        try:
            with anyio.fail_after(timeout):
                if self._http is not None:
                    return await self._http.request(method, url, **kwargs)
                async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                    return await client.request(method, url, **kwargs)
        except TimeoutError as e:
            raise httpx.TimeoutException(f"{method} {url} took longer than {timeout}s") from e

    # ---------- public API ----------

    def require_configured(self) -> str:
        """Raise SeparationConfigError unless an API token is set."""
        if not self.api_token:
            raise SeparationConfigError()
        return self.api_token

    async def dispatch(self, source: AudioSource, mode: SeparationMode) -> str:
        token = self.require_configured()
        form: dict[str, str] = {
            "api_token": token,
            "sep_type": str(mode.sep_type),
            "output_format": str(mode.output_format),
            "is_demo": "0",
        }
        for key in ("add_opt1", "add_opt2", "add_opt3"):
            value = getattr(mode, key)
            if value is not None:
                form[key] = str(value)

        files = None
        if isinstance(source, AudioUpload):
            files = {"audiofile": (source.file_name or "input.wav", source.data, source.mime or "audio/wav")}
        else:
            form["url"] = source

        try:
            # uploads carry the whole song, so they get the transfer budget
            timeout = self.download_timeout if files else self.timeout
            res = await self._send(timeout, "POST", f"{self.base_url}/separation/create", data=form, files=files)
        except httpx.HTTPError as e:
            raise DispatchError(f"separation/create transport error: {e}") from e

        body = self._json_or_none(res)
        if body is None:
            raise DispatchError(f"MVSEP returned non-JSON response ({res.status_code}).")
        if res.status_code >= 400:
            message = _str(body.get("message")) if isinstance(body, dict) else ""
            raise DispatchError(message or f"MVSEP request failed ({res.status_code}).")
        if not isinstance(body, dict) or not body.get("success"):
            data = body.get("data") if isinstance(body, dict) else None
            message = _str(data.get("message")) if isinstance(data, dict) else ""
            raise DispatchError(message or "MVSEP could not create separation.")

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        job_hash = _str(data.get("hash")).strip()
        if not job_hash:
            raise DispatchError("MVSEP did not return a job hash.")

        self.logger.info("Dispatched %s (sep_type=%s) -> %s", mode.name, mode.sep_type, job_hash)
        return job_hash

    async def poll(self, job_hash: str) -> PollResult:
        try:
            res = await self._send(
                self.timeout, "GET", f"{self.base_url}/separation/get", params={"hash": job_hash}
            )
        except httpx.HTTPError as e:
            raise PollError(f"separation/get transport error: {e}") from e

        body = self._json_or_none(res)
        if body is None:
            raise PollError(f"MVSEP returned non-JSON response ({res.status_code}).")
        if res.status_code >= 400:
            raise PollError(f"MVSEP request failed ({res.status_code}).")
        # an empty or status-less body is a broken response, not a verdict on the job
        if not isinstance(body, dict) or not _str(body.get("status")).strip():
            raise PollError(f"MVSEP returned no job status ({res.status_code}).")

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        return PollResult(
            status=normalize_status(_str(body.get("status"))),
            message=_str(data.get("message")),
            files=parse_files(data.get("files")),
            raw=body,
        )

    async def download(self, url: str) -> tuple[bytes, str]:
        """Returns (bytes, content_type). Empty bodies are the caller's problem."""
        try:
            res = await self._send(self.download_timeout, "GET", url)
        except httpx.HTTPError as e:
            raise MaterializeError(f"download transport error for {url}: {e}") from e
        if res.status_code >= 400:
            raise MaterializeError(f"download failed ({res.status_code}) for {url}")
        return res.content, res.headers.get("content-type", "")

    # ---------- internals ----------

    @staticmethod
    def _json_or_none(res: httpx.Response) -> Any:
        text = res.text
        if not text:
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return None
