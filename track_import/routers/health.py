import os
import subprocess  # nosec B404
from functools import lru_cache

from fastapi import APIRouter, Request

from track_import.schemas.health import HealthResponse, VersionResponse
from track_import.settings import settings

router = APIRouter(tags=["health"])


@lru_cache(maxsize=1)
def _git_sha() -> str:
    try:
        return (
            subprocess.check_output(  # nosec
                ["git", "rev-parse", "--short", "HEAD"],
                stderr=subprocess.DEVNULL,
            )
            .decode()
            .strip()
        )
    except Exception:
        return "unknown"


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    remote = getattr(request.app.state, "remote_client", None)
    return HealthResponse(
        status="ok",
        version=settings.app_version,
        remote_linked=bool(remote is not None and remote.has_token),
    )


@router.get("/api/v1/version", response_model=VersionResponse)
async def get_version() -> VersionResponse:
    return VersionResponse(
        name=settings.app_name,
        version=settings.app_version,
        git_sha=_git_sha(),
        build_time=os.environ.get("BUILD_TIME", "unknown"),
    )
