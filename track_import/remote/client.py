"""HTTP client for the linked remote storage account (Dropbox-style API v2).

Only the two calls the import pipeline needs are implemented: folder
listing (with transparent cursor pagination) and temporary-link resolution.
OAuth and token refresh are handled elsewhere; an expired token surfaces as
``AuthExpiredError`` so the caller can re-authenticate.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from track_import.errors import (
    AuthExpiredError,
    RemoteListingError,
    StepTimeoutError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

_AUTH_ERROR_TAGS: frozenset[str] = frozenset({"invalid_access_token", "expired_access_token"})


@dataclass(frozen=True)
class RemoteEntry:
    """One item of a remote folder listing."""

    name: str
    path_lower: str
    tag: str  # "file" | "folder"
    size: int = 0
    server_modified: str | None = None

    @property
    def is_folder(self) -> bool:
        return self.tag == "folder"

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> RemoteEntry:
        return cls(
            name=raw.get("name", ""),
            path_lower=raw.get("path_lower") or raw.get("path_display") or "",
            tag=raw.get(".tag", "file"),
            size=int(raw.get("size") or 0),
            server_modified=raw.get("server_modified"),
        )


def _error_tag(body: str) -> str | None:
    """Extract ``error['.tag']`` from a Dropbox-style JSON error body."""
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get(".tag")
    return None


class RemoteStorageClient:
    """Thin async wrapper over the remote storage HTTP API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        access_token: str = "",
        api_base: str = "https://api.dropboxapi.com/2",
    ) -> None:
        self._http = http_client
        self._token = access_token
        self.api_base = api_base.rstrip("/")

    @property
    def has_token(self) -> bool:
        return bool(self._token)

    def set_access_token(self, token: str) -> None:
        self._token = token

    async def list_folder(self, path: str = "") -> list[RemoteEntry]:
        """Return every entry of ``path``, following ``has_more`` cursors.

        Raises:
            AuthExpiredError: Token missing, invalid or expired.
            TransientNetworkError: Connectivity problems, timeouts, 429/5xx.
            RemoteListingError: Any other API failure.
        """
        entries: list[RemoteEntry] = []
        payload = await self._post(
            "/files/list_folder",
            {
                "path": path,
                "recursive": False,
                "include_media_info": True,
                "include_deleted": False,
                "include_has_explicit_shared_members": False,
            },
            timeout_is_transient=True,
        )
        pages = 1
        while True:
            entries.extend(RemoteEntry.from_api(raw) for raw in payload.get("entries", []))
            if not payload.get("has_more"):
                break
            payload = await self._post(
                "/files/list_folder/continue",
                {"cursor": payload.get("cursor")},
                timeout_is_transient=True,
            )
            pages += 1

        logger.info("Listed %d entries in %r (%d page(s))", len(entries), path or "/", pages)
        return entries

    async def get_temporary_link(self, path: str) -> str:
        """Return a short-lived download URL for ``path``. Never persist it."""
        payload = await self._post("/files/get_temporary_link", {"path": path})
        link = payload.get("link")
        if not link:
            raise RemoteListingError(f"No temporary link returned for {path}")
        return link

    async def _post(
        self,
        endpoint: str,
        body: dict[str, Any],
        *,
        timeout_is_transient: bool = False,
    ) -> dict[str, Any]:
        if not self._token:
            raise AuthExpiredError("Not authenticated with remote storage")

        try:
            response = await self._http.post(
                f"{self.api_base}{endpoint}",
                json=body,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.TimeoutException as exc:
            if timeout_is_transient:
                raise TransientNetworkError(f"Remote storage timed out: {endpoint}") from exc
            raise StepTimeoutError(f"Remote storage timed out: {endpoint}") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"Remote storage unreachable: {exc}") from exc

        if response.is_success:
            return response.json()

        text = response.text
        tag = _error_tag(text)
        logger.warning("Remote API %s failed: %s %s", endpoint, response.status_code, tag or "")

        if response.status_code == 401 or tag in _AUTH_ERROR_TAGS:
            raise AuthExpiredError("Remote storage token expired")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(
                f"Remote storage unavailable ({response.status_code}): {text[:200]}"
            )
        if tag == "insufficient_scope":
            raise RemoteListingError(
                "App permissions are insufficient. Check the remote app permissions."
            )
        raise RemoteListingError(
            f"Remote API request failed with status {response.status_code}: {text[:200]}"
        )
