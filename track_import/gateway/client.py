"""Transcode/Store Gateway: places audio bytes in durable storage.

Two mutually exclusive backend paths, chosen by the format classifier:

- pass-through store (``/api/process-audio``): already-compressed input is
  stored as-is.
- transcode-then-store (``gateway_transcode_path``): uncompressed input is
  converted to the codec of the user's quality preference, then stored.

Both return a playable URL (used for duration probing only) and a
``StorageDescriptor`` that is the only thing ever written to the catalog.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

import httpx

from track_import.errors import (
    GatewayError,
    ImportValidationError,
    StepTimeoutError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

PROCESS_AUDIO_PATH = "/api/process-audio"
DEFAULT_TRANSCODE_PATH = "/api/transcode-audio"

QualityPreference = Literal["mp3-320", "aac-320"]

# preference -> (backend quality, output codec)
_QUALITY_MAP: dict[str, tuple[str, str]] = {
    "mp3-320": ("standard", "mp3"),
    "aac-320": ("high", "aac"),
}


class StorageKind(StrEnum):
    PUBLIC_URL = "public_url"
    PRIVATE_KEY = "private_key"


@dataclass(frozen=True)
class StorageDescriptor:
    """Durable reference to a stored object. Immutable once returned."""

    kind: StorageKind
    ref: str
    backend_hint: str = "r2"


@dataclass(frozen=True)
class GatewayResult:
    playback_url: str
    descriptor: StorageDescriptor
    transcoded: bool
    quality: str | None = None
    original_filename: str | None = None


@dataclass(frozen=True)
class AudioSource:
    """What the gateway should fetch: a URL, or a local file to upload."""

    url: str | None = None
    path: Path | None = None
    content_type: str | None = None

    def __post_init__(self) -> None:
        if (self.url is None) == (self.path is None):
            raise ValueError("AudioSource needs exactly one of url or path")


def quality_params(preference: str) -> tuple[str, str]:
    """Map a stored preference (``mp3-320`` / ``aac-320``) to ``(quality, codec)``."""
    try:
        return _QUALITY_MAP[preference]
    except KeyError:
        raise ValueError(f"Unknown quality preference: {preference!r}") from None


def parse_gateway_response(data: Any, *, transcoded_default: bool) -> GatewayResult:
    """Validate a backend JSON payload and build a ``GatewayResult``.

    Raises:
        GatewayError: ``ok`` is not true.
        ImportValidationError: neither ``storage_key`` nor ``publicUrl`` is
            present, or no playable URL was returned.
    """
    if not isinstance(data, dict):
        raise ImportValidationError("Gateway returned a non-object payload")
    if data.get("ok") is not True:
        raise GatewayError(str(data.get("error") or "Gateway reported failure"))

    backend_hint = str(data.get("storage_type") or data.get("storage_bucket") or "r2")
    storage_key = data.get("storage_key")
    public_url = data.get("publicUrl")

    if storage_key:
        descriptor = StorageDescriptor(StorageKind.PRIVATE_KEY, str(storage_key), backend_hint)
    elif public_url:
        descriptor = StorageDescriptor(StorageKind.PUBLIC_URL, str(public_url), backend_hint)
    else:
        raise ImportValidationError(
            "Gateway returned neither a storage key nor a public URL"
        )

    playback_url = data.get("url") or public_url
    if not playback_url:
        raise ImportValidationError("Gateway returned no playable URL")

    return GatewayResult(
        playback_url=str(playback_url),
        descriptor=descriptor,
        transcoded=bool(data.get("transcoded", transcoded_default)),
        quality=data.get("quality"),
        original_filename=data.get("originalFilename"),
    )


class TranscodeStoreGateway:
    """Client for the transcode/store backend."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        *,
        transcode_path: str = DEFAULT_TRANSCODE_PATH,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._http = http_client
        self.base_url = base_url.rstrip("/")
        self.transcode_path = transcode_path
        self.timeout_seconds = timeout_seconds

    async def store_as_is(
        self, source: AudioSource, file_name: str, preference: str
    ) -> GatewayResult:
        """Store already-compressed audio without conversion."""
        return await self._call(PROCESS_AUDIO_PATH, source, file_name, preference, transcode=False)

    async def transcode_and_store(
        self, source: AudioSource, file_name: str, preference: str
    ) -> GatewayResult:
        """Convert to the preference's codec, then store."""
        return await self._call(self.transcode_path, source, file_name, preference, transcode=True)

    async def _call(
        self,
        endpoint: str,
        source: AudioSource,
        file_name: str,
        preference: str,
        *,
        transcode: bool,
    ) -> GatewayResult:
        quality, codec = quality_params(preference)
        fields = {"fileName": file_name, "quality": quality, "outputFormat": codec}
        url = f"{self.base_url}{endpoint}"

        logger.info(
            "Gateway %s: %s (quality=%s, codec=%s)",
            "transcode" if transcode else "store",
            file_name,
            quality,
            codec,
        )

        try:
            # httpx timeouts apply per phase; wait_for caps the whole call
            response = await asyncio.wait_for(
                self._post(url, source, file_name, fields), timeout=self.timeout_seconds
            )
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise StepTimeoutError(
                f"Gateway call for {file_name} exceeded {self.timeout_seconds:.0f}s"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"Gateway unreachable: {exc}") from exc

        if not response.is_success:
            raise GatewayError(
                "process-audio failed" if not transcode else "transcode-audio failed",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError:
            raise GatewayError(
                "Gateway returned non-JSON", status_code=response.status_code, body=response.text
            ) from None

        result = parse_gateway_response(data, transcoded_default=transcode)
        logger.info(
            "Gateway stored %s as %s (%s, transcoded=%s)",
            file_name,
            result.descriptor.kind,
            result.descriptor.backend_hint,
            result.transcoded,
        )
        return result

    async def _post(
        self, url: str, source: AudioSource, file_name: str, fields: dict[str, str]
    ) -> httpx.Response:
        if source.path is None:
            return await self._http.post(
                url,
                json={"audioUrl": source.url, **fields},
                timeout=self.timeout_seconds,
            )

        content_type = (
            source.content_type
            or mimetypes.guess_type(file_name)[0]
            or "application/octet-stream"
        )
        with source.path.open("rb") as fh:
            return await self._http.post(
                url,
                data=fields,
                files={"audio": (file_name, fh, content_type)},
                timeout=self.timeout_seconds,
            )
