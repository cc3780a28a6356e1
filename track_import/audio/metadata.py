"""Audio tag extraction using mutagen.

Extracts title/artist/album from audio files or in-memory byte buffers.
Supports MP3 (ID3), OGG/FLAC (Vorbis), MP4/M4A atoms, and the RIFF
``LIST/INFO`` chunk that WAV exporters commonly write instead of ID3.
"""

from __future__ import annotations

import io
import logging
import re
import struct
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import mutagen
from mutagen.mp4 import MP4

logger = logging.getLogger(__name__)

# Tag key mappings per format family
_ID3_TAG_MAP: dict[str, str] = {
    "title": "TIT2",
    "artist": "TPE1",
    "album": "TALB",
}

_VORBIS_TAG_MAP: dict[str, str] = {
    "title": "title",
    "artist": "artist",
    "album": "album",
}

_MP4_TAG_MAP: dict[str, str] = {
    "title": "\xa9nam",
    "artist": "\xa9ART",
    "album": "\xa9alb",
}

# RIFF INFO sub-chunk ids
_RIFF_INFO_MAP: dict[bytes, str] = {
    b"INAM": "title",
    b"IART": "artist",
    b"IPRD": "album",
}

_ARTIST_TITLE_RE = re.compile(r"^(.+?)\s*-\s*(.+)$")


@dataclass
class TrackTags:
    """Container for descriptive tags. Every field is optional."""

    title: str | None = None
    artist: str | None = None
    album: str | None = None
    duration_seconds: float | None = None

    def merged_over(self, fallback: TrackTags) -> TrackTags:
        """Return a copy where missing fields are taken from ``fallback``."""
        return TrackTags(
            title=self.title or fallback.title,
            artist=self.artist or fallback.artist,
            album=self.album or fallback.album,
            duration_seconds=self.duration_seconds or fallback.duration_seconds,
        )


def _get_first_text(tags: dict | mutagen.Tags | None, key: str) -> str | None:
    """Safely extract a text tag value, handling list-valued tags."""
    if tags is None:
        return None
    value = tags.get(key)
    if value is None:
        return None
    # mutagen often wraps values in list-like objects
    if isinstance(value, list):
        return str(value[0]) if value else None
    return str(value)


def _extract_tags_id3(tags: mutagen.Tags) -> dict[str, str | None]:
    """Extract metadata from ID3 tags (MP3, WAV/AIFF with an id3 chunk)."""
    result: dict[str, str | None] = {}
    for field_name, tag_key in _ID3_TAG_MAP.items():
        tag = tags.get(tag_key)
        if tag is not None:
            # ID3 text frames have a .text list attribute
            texts = getattr(tag, "text", None)
            result[field_name] = str(texts[0]) if texts else str(tag)
        else:
            result[field_name] = None
    return result


def _extract_tags_vorbis(tags: mutagen.Tags) -> dict[str, str | None]:
    """Extract metadata from Vorbis comments (OGG/FLAC)."""
    return {name: _get_first_text(tags, key) for name, key in _VORBIS_TAG_MAP.items()}


def _extract_tags_mp4(tags: mutagen.Tags) -> dict[str, str | None]:
    """Extract metadata from MP4 atoms (M4A/AAC)."""
    return {name: _get_first_text(tags, key) for name, key in _MP4_TAG_MAP.items()}


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_riff_info(data: bytes) -> TrackTags:
    """Read INAM/IART/IPRD from the ``LIST/INFO`` chunk of a RIFF/WAVE buffer.

    Returns empty tags for anything that is not a well-formed RIFF/WAVE
    header. Truncated buffers are parsed as far as they go.
    """
    tags = TrackTags()
    if len(data) < 12 or data[0:4] != b"RIFF" or data[8:12] != b"WAVE":
        return tags

    offset = 12
    while offset + 8 <= len(data):
        chunk_id = data[offset : offset + 4]
        (chunk_size,) = struct.unpack_from("<I", data, offset + 4)
        body_start = offset + 8

        if chunk_id == b"LIST" and data[body_start : body_start + 4] == b"INFO":
            _parse_info_subchunks(data, body_start + 4, body_start + chunk_size, tags)

        # Chunks are word-aligned
        offset = body_start + chunk_size + (chunk_size % 2)

    return tags


def _parse_info_subchunks(data: bytes, start: int, end: int, tags: TrackTags) -> None:
    end = min(end, len(data))
    offset = start
    while offset + 8 <= end:
        sub_id = data[offset : offset + 4]
        (sub_size,) = struct.unpack_from("<I", data, offset + 4)
        value_start = offset + 8
        if sub_size > 0 and value_start + sub_size <= end:
            raw = data[value_start : value_start + sub_size].split(b"\x00", 1)[0]
            field_name = _RIFF_INFO_MAP.get(sub_id)
            if field_name:
                setattr(tags, field_name, _clean(raw.decode("latin-1")))
        offset = value_start + sub_size + (sub_size % 2)


def extract_tags(source: Path | bytes, filename: str | None = None) -> TrackTags:
    """Extract tags from a file path or an in-memory buffer with mutagen.

    Handles MP3 (ID3: TIT2/TPE1/TALB), OGG/FLAC (Vorbis: title/artist/album)
    and MP4 (\\xa9nam/\\xa9ART/\\xa9alb). For WAV sources the RIFF INFO chunk
    fills any field ID3 did not provide.

    Args:
        source: Path to the audio file, or its (possibly truncated) bytes.
        filename: Original filename, used only to decide whether the RIFF
            INFO parser applies to a byte buffer.

    Returns:
        TrackTags with available fields populated. Unparseable input yields
        empty tags rather than an exception.
    """
    tags = TrackTags()

    if isinstance(source, bytes):
        data = source
        name = filename or ""
        target: io.BytesIO | str = io.BytesIO(data)
    else:
        name = filename or source.name
        data = b""
        target = str(source)

    try:
        audio_file = mutagen.File(target)
    except Exception:
        logger.warning("mutagen could not parse %s", name or "buffer")
        audio_file = None

    if audio_file is not None:
        info = getattr(audio_file, "info", None)
        length = getattr(info, "length", None) if info is not None else None
        if length:
            tags.duration_seconds = float(length)

        raw_tags = audio_file.tags
        tag_data: dict[str, str | None] = {}
        if raw_tags is not None:
            if isinstance(audio_file, MP4):
                tag_data = _extract_tags_mp4(raw_tags)
            elif hasattr(raw_tags, "getall"):
                tag_data = _extract_tags_id3(raw_tags)
            else:
                tag_data = _extract_tags_vorbis(raw_tags)

        tags.title = _clean(tag_data.get("title"))
        tags.artist = _clean(tag_data.get("artist"))
        tags.album = _clean(tag_data.get("album"))

    if PurePosixPath(name).suffix.lower() == ".wav":
        if not data and isinstance(source, Path):
            data = source.read_bytes()
        tags = tags.merged_over(parse_riff_info(data))

    return tags


def parse_filename(filename: str) -> TrackTags:
    """Derive tags from a filename.

    ``"Artist - Title.ext"`` yields both fields; anything else yields the
    stem as title.
    """
    stem = PurePosixPath(filename).stem if "." in filename else filename
    stem = stem.strip()
    match = _ARTIST_TITLE_RE.match(stem)
    if match:
        return TrackTags(title=_clean(match.group(2)), artist=_clean(match.group(1)))
    return TrackTags(title=stem or None)
