"""Shared fixtures: generated WAV audio and fake pipeline collaborators."""

from __future__ import annotations

import io
import struct
import uuid
import wave
from collections.abc import Callable

import pytest

from track_import.catalog import CatalogRecord
from track_import.gateway.client import GatewayResult, StorageDescriptor, StorageKind


def make_wav_bytes(
    duration_seconds: float = 1.0,
    sample_rate: int = 8000,
    info: dict[bytes, str] | None = None,
) -> bytes:
    """Build a silent mono 16-bit WAV, optionally with a ``LIST/INFO`` chunk."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(b"\x00\x00" * int(sample_rate * duration_seconds))
    data = buf.getvalue()

    if info:
        body = b"INFO"
        for key, value in info.items():
            raw = value.encode("latin-1") + b"\x00"
            if len(raw) % 2:
                raw += b"\x00"
            body += key + struct.pack("<I", len(raw)) + raw
        data += b"LIST" + struct.pack("<I", len(body)) + body
        # Patch the RIFF size to cover the appended chunk
        data = data[:4] + struct.pack("<I", len(data) - 8) + data[8:]

    return data


@pytest.fixture
def wav_factory() -> Callable[..., bytes]:
    return make_wav_bytes


class FakeCatalog:
    """In-memory ``CatalogWriter``; ``failures`` are raised before succeeding."""

    def __init__(self, failures: list[BaseException] | None = None) -> None:
        self.records: list[CatalogRecord] = []
        self.calls = 0
        self._failures = list(failures or [])

    async def insert(self, record: CatalogRecord) -> uuid.UUID:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        self.records.append(record)
        return uuid.uuid4()


@pytest.fixture
def fake_catalog() -> FakeCatalog:
    return FakeCatalog()


def public_result(url: str, *, transcoded: bool = False) -> GatewayResult:
    return GatewayResult(
        playback_url=url,
        descriptor=StorageDescriptor(StorageKind.PUBLIC_URL, url),
        transcoded=transcoded,
    )


def private_result(key: str, playback_url: str, *, transcoded: bool = True) -> GatewayResult:
    return GatewayResult(
        playback_url=playback_url,
        descriptor=StorageDescriptor(StorageKind.PRIVATE_KEY, key),
        transcoded=transcoded,
    )
