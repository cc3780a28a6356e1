import logging
import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from track_import.audio.prober import MetadataProber
from track_import.auth.admin import ApiError
from track_import.catalog import SqlCatalogWriter
from track_import.db.session import async_session_factory, check_database, engine
from track_import.gateway.client import TranscodeStoreGateway
from track_import.pipeline.orchestrator import ImportConfig, ImportOrchestrator
from track_import.remote.client import RemoteStorageClient
from track_import.remote.lister import RemoteFileLister
from track_import.routers import health, imports, remote
from track_import.schemas.errors import ErrorDetail, ErrorResponse
from track_import.settings import Settings, settings

logger = logging.getLogger(__name__)


def build_services(app: FastAPI, http: httpx.AsyncClient, cfg: Settings) -> None:
    """Wire the import pipeline onto ``app.state``."""
    remote_client = RemoteStorageClient(
        http, access_token=cfg.remote_access_token, api_base=cfg.remote_api_base
    )
    prober = MetadataProber(
        http,
        timeout_seconds=cfg.probe_timeout_seconds,
        fallback_seconds=cfg.fallback_duration_seconds,
        max_read_bytes=cfg.tag_probe_max_bytes,
    )
    gateway = TranscodeStoreGateway(
        http,
        cfg.gateway_base_url,
        transcode_path=cfg.gateway_transcode_path,
        timeout_seconds=cfg.gateway_timeout_seconds,
    )

    app.state.remote_client = remote_client
    app.state.remote_lister = RemoteFileLister(remote_client)
    app.state.orchestrator = ImportOrchestrator(
        ImportConfig.from_settings(cfg),
        remote=remote_client,
        prober=prober,
        gateway=gateway,
        catalog=SqlCatalogWriter(async_session_factory),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # 0. ffprobe is optional: header parsing still yields most durations
    if shutil.which("ffprobe"):
        logger.info("ffprobe found on PATH")
    else:
        logger.warning(
            "ffprobe not found on PATH; durations come from tag headers or the %.0fs fallback",
            settings.fallback_duration_seconds,
        )

    # 1. Check the catalog database
    try:
        await check_database()
        logger.info("Catalog database connection verified")
    except Exception as exc:
        logger.debug("Database connection error: %s", exc)
        raise SystemExit(
            "FATAL: Cannot reach the catalog database. "
            "Check DATABASE_URL and ensure the server is running."
        ) from exc

    # 2. Shared HTTP client and pipeline
    http = httpx.AsyncClient(follow_redirects=True)
    build_services(app, http, settings)
    if not settings.remote_access_token:
        logger.info("No remote storage token configured; link one via PUT /api/v1/remote/token")

    yield

    # Shutdown
    await app.state.orchestrator.shutdown()
    await http.aclose()
    await engine.dispose()


def register_error_handlers(application: FastAPI) -> None:
    @application.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=ErrorDetail(code=exc.code, message=exc.message)
            ).model_dump(),
        )

    @application.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error=ErrorDetail(code="INTERNAL_ERROR", message="An unexpected error occurred.")
            ).model_dump(),
        )


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(health.router)
    application.include_router(remote.router, prefix="/api/v1")
    application.include_router(imports.router, prefix="/api/v1")
    register_error_handlers(application)

    return application


app = create_app()
