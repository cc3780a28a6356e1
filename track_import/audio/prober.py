"""Metadata probing for imported audio: playable duration and embedded tags.

Duration probing races two independent readers of the resource against a
fixed deadline and never fails the caller: when nothing usable arrives in
time, a fallback duration is returned instead.

- ``ffprobe`` container read (fast when the container header carries the
  duration; works on URLs and local paths).
- mutagen header read over the downloaded resource (only trusted when the
  whole resource fit in the read budget).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse

import httpx

from track_import.audio.metadata import extract_tags

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 15.0
FALLBACK_DURATION_SECONDS = 180.0
UNKNOWN_DURATION = "--:--"


class AudioProbeError(Exception):
    """Raised by an individual duration reader that could not decode the resource."""


@dataclass(frozen=True)
class ProbedTags:
    """Best-effort tags read from the source file."""

    title: str | None = None
    artist: str | None = None


def format_duration(seconds: float | None) -> str:
    """Format seconds as ``M:SS``; unusable values render as ``--:--``."""
    if seconds is None or not math.isfinite(seconds) or seconds <= 0:
        return UNKNOWN_DURATION
    minutes = int(seconds // 60)
    remaining = int(seconds % 60)
    return f"{minutes}:{remaining:02d}"


def _is_url(location: str) -> bool:
    return urlparse(location).scheme in ("http", "https")


def _valid_duration(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def _name_from_location(location: str) -> str:
    if _is_url(location):
        return PurePosixPath(unquote(urlparse(location).path)).name
    return Path(location).name


class MetadataProber:
    """Reads duration and tags from resolvable audio locations."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        timeout_seconds: float = PROBE_TIMEOUT_SECONDS,
        fallback_seconds: float = FALLBACK_DURATION_SECONDS,
        max_read_bytes: int = 16 * 1024 * 1024,
        ffprobe_bin: str = "ffprobe",
    ) -> None:
        self._http = http_client
        self.timeout_seconds = timeout_seconds
        self.fallback_seconds = fallback_seconds
        self.max_read_bytes = max_read_bytes
        self.ffprobe_bin = ffprobe_bin

    # ------------------------------------------------------------------
    # Duration
    # ------------------------------------------------------------------

    async def probe_duration(self, location: str) -> float:
        """Return the playable duration of ``location`` in seconds.

        Returns ``fallback_seconds`` when every reader fails or the deadline
        passes. Never raises for probe failures.
        """
        readers = [
            asyncio.create_task(self._ffprobe_duration(location), name="ffprobe_duration"),
            asyncio.create_task(self._header_duration(location), name="header_duration"),
        ]
        try:
            duration = await asyncio.wait_for(
                self._first_valid(readers), timeout=self.timeout_seconds
            )
        except TimeoutError:
            logger.warning(
                "Duration probe timed out after %.1fs for %s, using fallback %.0fs",
                self.timeout_seconds,
                _name_from_location(location),
                self.fallback_seconds,
            )
            return self.fallback_seconds
        finally:
            for task in readers:
                if not task.done():
                    task.cancel()
            # Let cancelled readers clean up their subprocess / connection
            await asyncio.gather(*readers, return_exceptions=True)

        if duration is None:
            logger.warning(
                "Could not read duration of %s, using fallback %.0fs",
                _name_from_location(location),
                self.fallback_seconds,
            )
            return self.fallback_seconds
        return duration

    async def _first_valid(self, readers: list[asyncio.Task[float]]) -> float | None:
        for finished in asyncio.as_completed(readers):
            try:
                value = await finished
            except Exception as exc:
                logger.debug("Duration reader failed: %s", exc)
                continue
            if _valid_duration(value):
                return value
        return None

    async def _ffprobe_duration(self, location: str) -> float:
        proc = await asyncio.create_subprocess_exec(
            self.ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            location,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise

        if proc.returncode != 0:
            err_msg = stderr.decode(errors="replace").strip()
            raise AudioProbeError(f"ffprobe exited with code {proc.returncode}: {err_msg}")

        try:
            return float(stdout.decode().strip())
        except ValueError as exc:
            raise AudioProbeError(f"ffprobe returned no duration: {stdout!r}") from exc

    async def _header_duration(self, location: str) -> float:
        name = _name_from_location(location)
        if _is_url(location):
            data, complete = await self._read_resource(location, self.max_read_bytes)
            if not complete:
                raise AudioProbeError(f"{name} exceeds {self.max_read_bytes} byte read budget")
            tags = extract_tags(data, name)
        else:
            tags = extract_tags(Path(location), name)

        if tags.duration_seconds is None:
            raise AudioProbeError(f"mutagen found no stream info in {name}")
        return tags.duration_seconds

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def probe_tags(self, location: str, filename: str) -> ProbedTags:
        """Read title/artist tags embedded in the file.

        Best effort: any failure yields an empty ``ProbedTags``.
        """
        try:
            if _is_url(location):
                data, _ = await asyncio.wait_for(
                    self._read_resource(location, self.max_read_bytes),
                    timeout=self.timeout_seconds,
                )
                tags = extract_tags(data, filename)
            else:
                tags = extract_tags(Path(location), filename)
        except Exception as exc:
            logger.warning("Tag extraction failed for %s: %s", filename, exc)
            return ProbedTags()

        return ProbedTags(title=tags.title, artist=tags.artist)

    async def _read_resource(self, url: str, limit: int) -> tuple[bytes, bool]:
        """Download at most ``limit`` bytes; the flag is True when the body was complete."""
        buf = bytearray()
        async with self._http.stream("GET", url) as response:
            response.raise_for_status()
            async for chunk in response.aiter_bytes():
                buf.extend(chunk)
                if len(buf) > limit:
                    return bytes(buf[:limit]), False
        return bytes(buf), True
