"""Remote File Lister: folders and supported audio files of a remote path.

Listings are cached per path for the lifetime of the lister so that
changing the sort direction never triggers another fetch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from track_import.audio.classifier import is_supported_audio
from track_import.remote.client import RemoteEntry, RemoteStorageClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListResult:
    folders: tuple[RemoteEntry, ...]
    files: tuple[RemoteEntry, ...]


def _sorted(entries: tuple[RemoteEntry, ...], descending: bool) -> tuple[RemoteEntry, ...]:
    return tuple(sorted(entries, key=lambda e: e.name.casefold(), reverse=descending))


class RemoteFileLister:
    """Lists, filters, sorts and caches remote folder contents."""

    def __init__(self, client: RemoteStorageClient) -> None:
        self._client = client
        self._cache: dict[str, ListResult] = {}

    async def list(self, path: str = "", *, descending: bool = False) -> ListResult:
        """Return folders and audio files under ``path``.

        Served from the cache when this path was listed before.

        Raises:
            AuthExpiredError, TransientNetworkError, RemoteListingError:
                propagated from the client; nothing is cached on failure.
        """
        cached = self._cache.get(path)
        if cached is None:
            entries = await self._client.list_folder(path)
            cached = ListResult(
                folders=tuple(e for e in entries if e.is_folder),
                files=tuple(
                    e for e in entries if e.tag == "file" and is_supported_audio(e.name)
                ),
            )
            self._cache[path] = cached
            logger.debug(
                "Cached %r: %d folders, %d audio files",
                path,
                len(cached.folders),
                len(cached.files),
            )
        return ListResult(
            folders=_sorted(cached.folders, descending),
            files=_sorted(cached.files, descending),
        )

    def sort(self, path: str, *, descending: bool) -> ListResult | None:
        """Re-apply ordering to a cached listing. ``None`` if ``path`` was never listed."""
        cached = self._cache.get(path)
        if cached is None:
            return None
        return ListResult(
            folders=_sorted(cached.folders, descending),
            files=_sorted(cached.files, descending),
        )

    async def refresh(self, path: str = "", *, descending: bool = False) -> ListResult:
        self.invalidate(path)
        return await self.list(path, descending=descending)

    def invalidate(self, path: str | None = None) -> None:
        """Drop one cached path, or the whole cache when ``path`` is None."""
        if path is None:
            self._cache.clear()
        else:
            self._cache.pop(path, None)

    def find_file(self, path_lower: str) -> RemoteEntry | None:
        """Look up a previously listed audio file by its lowercased path."""
        for result in self._cache.values():
            for entry in result.files:
                if entry.path_lower == path_lower:
                    return entry
        return None

    def set_access_token(self, token: str) -> None:
        """Switch accounts/tokens; cached listings belong to the old token."""
        self._client.set_access_token(token)
        self.invalidate()
