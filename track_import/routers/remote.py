"""Remote storage browsing: link a token and list folders/audio files."""

from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request, Response

from track_import.audio.classifier import needs_transcode
from track_import.auth.admin import ApiError, require_admin_key
from track_import.errors import AuthExpiredError, PipelineError, TransientNetworkError
from track_import.remote.client import RemoteEntry
from track_import.remote.lister import RemoteFileLister
from track_import.schemas.errors import ErrorResponse
from track_import.schemas.remote import RemoteEntryOut, RemoteListing, RemoteTokenRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["remote"])


def _lister(request: Request) -> RemoteFileLister:
    return request.app.state.remote_lister


def _entry_out(entry: RemoteEntry) -> RemoteEntryOut:
    return RemoteEntryOut(
        name=entry.name,
        path_lower=entry.path_lower,
        size=entry.size,
        server_modified=entry.server_modified,
        needs_transcode=False if entry.is_folder else needs_transcode(entry.name),
    )


def remote_error(exc: PipelineError) -> ApiError:
    """Map a remote storage failure to the HTTP error convention."""
    if isinstance(exc, AuthExpiredError):
        return ApiError(401, "REMOTE_AUTH_EXPIRED", exc.message)
    if isinstance(exc, TransientNetworkError):
        return ApiError(503, "REMOTE_UNAVAILABLE", exc.message)
    return ApiError(502, "REMOTE_ERROR", exc.message)


@router.put(
    "/remote/token",
    status_code=204,
    dependencies=[Depends(require_admin_key)],
)
async def set_remote_token(body: RemoteTokenRequest, request: Request) -> Response:
    """Link (or re-link after expiry) the remote storage account."""
    _lister(request).set_access_token(body.access_token)
    logger.info("Remote storage token updated; listing cache cleared")
    return Response(status_code=204)


@router.get(
    "/remote/folders",
    response_model=RemoteListing,
    responses={
        401: {"description": "Remote token missing or expired", "model": ErrorResponse},
        502: {"description": "Remote API error", "model": ErrorResponse},
        503: {"description": "Remote API temporarily unavailable", "model": ErrorResponse},
    },
)
async def list_remote_folder(
    request: Request,
    path: str = Query(default=""),
    order: Literal["asc", "desc"] = Query(default="asc"),
    refresh: bool = Query(default=False),
) -> RemoteListing:
    """List sub-folders and supported audio files of ``path``."""
    lister = _lister(request)
    path = "" if path.strip() in ("", "/") else path.strip()
    descending = order == "desc"

    try:
        if refresh:
            result = await lister.refresh(path, descending=descending)
        else:
            result = await lister.list(path, descending=descending)
    except PipelineError as exc:
        raise remote_error(exc) from exc

    return RemoteListing(
        path=path,
        order=order,
        folders=[_entry_out(e) for e in result.folders],
        files=[_entry_out(e) for e in result.files],
    )
