"""Format classification: which uploads must be converted before storage."""

from pathlib import PurePosixPath

# Extensions the remote lister and upload endpoint accept
SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(
    {".mp3", ".wav", ".m4a", ".flac", ".aac", ".ogg", ".wma", ".aif", ".aiff"}
)

# Uncompressed formats: always transcoded before they are stored
MUST_CONVERT_EXTENSIONS: frozenset[str] = frozenset({".wav", ".aif", ".aiff"})


def file_extension(name: str) -> str:
    """Return the lowercased extension of ``name`` including the dot, or ``""``."""
    return PurePosixPath(name.strip()).suffix.lower()


def is_supported_audio(name: str) -> bool:
    return file_extension(name) in SUPPORTED_EXTENSIONS


def needs_transcode(display_name: str) -> bool:
    """Return True when ``display_name`` must go through the transcode path.

    Pure and deterministic: the verdict depends only on the extension.
    Already-compressed formats (mp3, m4a, aac, ...) and unknown extensions
    are stored as-is.
    """
    return file_extension(display_name) in MUST_CONVERT_EXTENSIONS
