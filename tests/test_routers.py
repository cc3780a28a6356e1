"""Integration tests for the HTTP adapter.

Uses a standalone FastAPI app with the health, remote and imports routers
mounted and the error handlers from main.py. The remote storage API is
served by ``httpx.MockTransport``; gateway, prober and catalog are faked.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from conftest import FakeCatalog, make_wav_bytes, private_result, public_result
from track_import.audio.prober import ProbedTags
from track_import.errors import GatewayError, ImportErrorKind
from track_import.gateway.client import AudioSource
from track_import.main import register_error_handlers
from track_import.pipeline.jobs import ImportCandidate, ImportJob
from track_import.pipeline.orchestrator import ImportConfig, ImportOrchestrator
from track_import.pipeline.progress import AuthExpiredNotice, BatchTally, JobSkipped
from track_import.remote.client import RemoteStorageClient
from track_import.remote.lister import RemoteFileLister
from track_import.routers import health, imports, remote
from track_import.routers.imports import _event_payload

_TEST_ADMIN_KEY = "test-admin-key-12345"
_ADMIN = {"X-Admin-Key": _TEST_ADMIN_KEY}

# ---------------------------------------------------------------------------
# Fake remote storage API
# ---------------------------------------------------------------------------


class _RemoteApi:
    def __init__(self) -> None:
        self.fail_status: int | None = None
        self.entries = [
            {".tag": "file", "name": "b.mp3", "path_lower": "/band/b.mp3", "size": 2048},
            {".tag": "file", "name": "A Take.wav", "path_lower": "/band/a take.wav", "size": 4096},
            {".tag": "file", "name": "notes.txt", "path_lower": "/band/notes.txt", "size": 10},
            {".tag": "folder", "name": "Stems", "path_lower": "/band/stems"},
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"error": {".tag": "other"}})
        body = json.loads(request.content)
        if request.url.path.endswith("/files/get_temporary_link"):
            return httpx.Response(200, json={"link": f"https://dl.test/tmp{body['path']}"})
        return httpx.Response(200, json={"entries": self.entries, "has_more": False})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _admin_key():
    with patch("track_import.auth.admin.settings", MagicMock(admin_api_key=_TEST_ADMIN_KEY)):
        yield


@pytest.fixture
def upload_dir(tmp_path: Path):
    path = tmp_path / "uploads"
    with patch(
        "track_import.routers.imports.settings",
        MagicMock(upload_tmp_dir=str(path), max_upload_bytes=64 * 1024),
    ):
        yield path


@pytest.fixture
def remote_api() -> _RemoteApi:
    return _RemoteApi()


@pytest.fixture
def gateway() -> MagicMock:
    gw = MagicMock(name="gateway")
    gw.store_as_is = AsyncMock(return_value=public_result("https://pub.test/b.mp3"))
    gw.transcode_and_store = AsyncMock(
        return_value=private_result("tracks/take.mp3", "https://signed.test/take.mp3")
    )
    return gw


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def app(remote_api: _RemoteApi, gateway: MagicMock, catalog: FakeCatalog) -> FastAPI:
    application = FastAPI()
    application.include_router(health.router)
    application.include_router(remote.router, prefix="/api/v1")
    application.include_router(imports.router, prefix="/api/v1")
    register_error_handlers(application)

    http = httpx.AsyncClient(transport=httpx.MockTransport(remote_api))
    remote_client = RemoteStorageClient(http, api_base="https://api.test/2")
    prober = MagicMock(name="prober")
    prober.probe_tags = AsyncMock(return_value=ProbedTags())
    prober.probe_duration = AsyncMock(return_value=125.0)

    application.state.remote_client = remote_client
    application.state.remote_lister = RemoteFileLister(remote_client)
    application.state.orchestrator = ImportOrchestrator(
        ImportConfig(),
        remote=remote_client,
        prober=prober,
        gateway=gateway,
        catalog=catalog,
    )
    return application


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _link(client: AsyncClient) -> None:
    resp = await client.put(
        "/api/v1/remote/token", json={"access_token": "sl.token"}, headers=_ADMIN
    )
    assert resp.status_code == 204


async def _wait_batch(client: AsyncClient, batch_id: str) -> dict:
    for _ in range(500):
        resp = await client.get(f"/api/v1/imports/{batch_id}")
        body = resp.json()
        if not body["running"]:
            return body
        await asyncio.sleep(0.01)
    raise AssertionError("batch did not finish")


# ---------------------------------------------------------------------------
# Health / version
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health_reports_remote_link(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["remote_linked"] is False

    await _link(client)
    assert (await client.get("/health")).json()["remote_linked"] is True


@pytest.mark.asyncio
async def test_version_returns_metadata(client: AsyncClient) -> None:
    resp = await client.get("/api/v1/version")
    assert resp.status_code == 200
    body = resp.json()
    assert body["name"] == "track-import-service"
    assert "git_sha" in body
    assert "build_time" in body


# ---------------------------------------------------------------------------
# Remote listing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_token_requires_admin_key(client: AsyncClient) -> None:
    resp = await client.put("/api/v1/remote/token", json={"access_token": "sl.token"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_list_folder(client: AsyncClient) -> None:
    await _link(client)
    resp = await client.get("/api/v1/remote/folders", params={"path": "/band"})

    assert resp.status_code == 200
    body = resp.json()
    assert [f["name"] for f in body["files"]] == ["A Take.wav", "b.mp3"]
    assert [f["needs_transcode"] for f in body["files"]] == [True, False]
    assert [f["name"] for f in body["folders"]] == ["Stems"]


@pytest.mark.asyncio
async def test_list_folder_descending(client: AsyncClient) -> None:
    await _link(client)
    resp = await client.get("/api/v1/remote/folders", params={"path": "/band", "order": "desc"})
    assert [f["name"] for f in resp.json()["files"]] == ["b.mp3", "A Take.wav"]


@pytest.mark.asyncio
async def test_list_folder_without_token(client: AsyncClient) -> None:
    resp = await client.get("/api/v1/remote/folders")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "REMOTE_AUTH_EXPIRED"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("upstream", "status", "code"),
    [
        (503, 503, "REMOTE_UNAVAILABLE"),
        (401, 401, "REMOTE_AUTH_EXPIRED"),
        (400, 502, "REMOTE_ERROR"),
    ],
)
async def test_list_folder_error_mapping(
    client: AsyncClient, remote_api: _RemoteApi, upstream: int, status: int, code: str
) -> None:
    await _link(client)
    remote_api.fail_status = upstream
    resp = await client.get("/api/v1/remote/folders", params={"path": "/band"})
    assert resp.status_code == status
    assert resp.json()["error"]["code"] == code


# ---------------------------------------------------------------------------
# Remote imports
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_import_remote_files(
    client: AsyncClient, gateway: MagicMock, catalog: FakeCatalog
) -> None:
    await _link(client)
    await client.get("/api/v1/remote/folders", params={"path": "/band"})

    resp = await client.post(
        "/api/v1/imports", json={"paths": ["/band/a take.wav", "/band/b.mp3"]}, headers=_ADMIN
    )
    assert resp.status_code == 202
    started = resp.json()
    assert started["running"] is True
    assert [j["display_name"] for j in started["jobs"]] == ["A Take.wav", "b.mp3"]

    body = await _wait_batch(client, started["batch_id"])
    assert [j["status"] for j in body["jobs"]] == ["succeeded", "succeeded"]
    assert body["tally"] == {"completed": 2, "failed": 0, "total": 2, "skipped": 0}
    assert body["summary"] == "2 succeeded, 0 failed, 0 in progress"
    assert body["message"] == "Successfully imported all 2 files to your library."

    gateway.transcode_and_store.assert_awaited_once_with(
        AudioSource(url="https://dl.test/tmp/band/a take.wav"), "A Take.wav", "mp3-320"
    )
    assert [r.duration for r in catalog.records] == ["2:05", "2:05"]


@pytest.mark.asyncio
async def test_import_requires_linked_account(client: AsyncClient) -> None:
    resp = await client.post("/api/v1/imports", json={"paths": ["/band/b.mp3"]}, headers=_ADMIN)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "REMOTE_AUTH_EXPIRED"


@pytest.mark.asyncio
async def test_import_rejects_unsupported_file(client: AsyncClient) -> None:
    await _link(client)
    resp = await client.post(
        "/api/v1/imports", json={"paths": ["/band/notes.txt"]}, headers=_ADMIN
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "UNSUPPORTED_FORMAT"


@pytest.mark.asyncio
async def test_import_skips_unsupported_file_and_imports_the_rest(
    client: AsyncClient, catalog: FakeCatalog
) -> None:
    await _link(client)
    await client.get("/api/v1/remote/folders", params={"path": "/band"})

    resp = await client.post(
        "/api/v1/imports", json={"paths": ["/band/notes.txt", "/band/b.mp3"]}, headers=_ADMIN
    )
    assert resp.status_code == 202
    started = resp.json()
    assert [j["display_name"] for j in started["jobs"]] == ["b.mp3"]
    assert started["rejected"] == [
        {
            "name": "notes.txt",
            "code": "UNSUPPORTED_FORMAT",
            "message": "Unsupported audio file: notes.txt",
        }
    ]

    body = await _wait_batch(client, started["batch_id"])
    assert body["jobs"][0]["status"] == "succeeded"
    assert len(catalog.records) == 1


@pytest.mark.asyncio
async def test_import_requires_admin_key(client: AsyncClient) -> None:
    resp = await client.post("/api/v1/imports", json={"paths": ["/band/b.mp3"]})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_import_requires_paths(client: AsyncClient) -> None:
    resp = await client.post("/api/v1/imports", json={"paths": []}, headers=_ADMIN)
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Retry / cancel / clear
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_retry_failed_job(client: AsyncClient, gateway: MagicMock) -> None:
    gateway.store_as_is = AsyncMock(
        side_effect=[
            GatewayError("process-audio failed", status_code=503, body="busy"),
            public_result("https://pub.test/b.mp3"),
        ]
    )
    await _link(client)
    resp = await client.post("/api/v1/imports", json={"paths": ["/band/b.mp3"]}, headers=_ADMIN)
    batch_id = resp.json()["batch_id"]

    body = await _wait_batch(client, batch_id)
    (job,) = body["jobs"]
    assert job["status"] == "failed"
    assert job["retryable"] is True
    assert job["error"]["kind"] == ImportErrorKind.GATEWAY_ERROR

    resp = await client.post(f"/api/v1/imports/jobs/{job['job_id']}/retry", headers=_ADMIN)
    assert resp.status_code == 202
    assert resp.json()["batch_id"] == batch_id
    new_job_id = resp.json()["job_id"]

    body = await _wait_batch(client, batch_id)
    (job,) = body["jobs"]
    assert job["job_id"] == new_job_id
    assert job["status"] == "succeeded"
    assert job["attempt"] == 2

    resp = await client.post(f"/api/v1/imports/jobs/{new_job_id}/retry", headers=_ADMIN)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "CONFLICT"


@pytest.mark.asyncio
async def test_retry_unknown_job(client: AsyncClient) -> None:
    resp = await client.post(f"/api/v1/imports/jobs/{uuid.uuid4()}/retry", headers=_ADMIN)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_unknown_batch(client: AsyncClient) -> None:
    resp = await client.get(f"/api/v1/imports/{uuid.uuid4()}")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_cancel_and_clear(client: AsyncClient) -> None:
    await _link(client)
    resp = await client.post("/api/v1/imports", json={"paths": ["/band/b.mp3"]}, headers=_ADMIN)
    batch_id = resp.json()["batch_id"]
    await _wait_batch(client, batch_id)

    resp = await client.post(f"/api/v1/imports/{batch_id}/cancel", headers=_ADMIN)
    assert resp.status_code == 202

    resp = await client.delete(f"/api/v1/imports/{batch_id}", headers=_ADMIN)
    assert resp.status_code == 204
    assert (await client.get(f"/api/v1/imports/{batch_id}")).status_code == 404


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upload_import_and_clear(
    client: AsyncClient, gateway: MagicMock, upload_dir: Path
) -> None:
    wav = make_wav_bytes(duration_seconds=1.0)
    with patch("track_import.routers.imports.magic") as mock_magic:
        mock_magic.from_buffer.return_value = "audio/wav"
        resp = await client.post(
            "/api/v1/imports/uploads",
            headers=_ADMIN,
            files=[("files", ("take.wav", wav, "audio/wav"))],
        )

    assert resp.status_code == 202
    batch_id = resp.json()["batch_id"]
    body = await _wait_batch(client, batch_id)
    assert body["jobs"][0]["status"] == "succeeded"
    assert body["jobs"][0]["display_name"] == "take.wav"

    source: AudioSource = gateway.transcode_and_store.await_args.args[0]
    assert source.path is not None
    assert source.path.parent.resolve() == upload_dir.resolve()
    assert source.content_type == "audio/wav"
    assert source.path.read_bytes() == wav

    resp = await client.delete(f"/api/v1/imports/{batch_id}", headers=_ADMIN)
    assert resp.status_code == 204
    assert list(upload_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_upload_too_large(client: AsyncClient, upload_dir: Path) -> None:
    big = make_wav_bytes(duration_seconds=5.0)
    with patch("track_import.routers.imports.magic") as mock_magic:
        mock_magic.from_buffer.return_value = "audio/wav"
        resp = await client.post(
            "/api/v1/imports/uploads",
            headers=_ADMIN,
            files=[("files", ("big.wav", big, "audio/wav"))],
        )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "FILE_TOO_LARGE"


@pytest.mark.asyncio
async def test_upload_imports_valid_files_and_reports_rejects(
    client: AsyncClient, gateway: MagicMock, upload_dir: Path
) -> None:
    wav = make_wav_bytes(duration_seconds=0.5)
    with patch("track_import.routers.imports.magic") as mock_magic:
        mock_magic.from_buffer.side_effect = ["audio/wav", "text/plain"]
        resp = await client.post(
            "/api/v1/imports/uploads",
            headers=_ADMIN,
            files=[
                ("files", ("ok.wav", wav, "audio/wav")),
                ("files", ("fake.mp3", b"hello world", "audio/mpeg")),
                ("files", ("empty.mp3", b"", "audio/mpeg")),
            ],
        )
    assert resp.status_code == 202
    started = resp.json()
    assert [j["display_name"] for j in started["jobs"]] == ["ok.wav"]
    assert [(r["name"], r["code"]) for r in started["rejected"]] == [
        ("fake.mp3", "UNSUPPORTED_FORMAT"),
        ("empty.mp3", "EMPTY_FILE"),
    ]
    assert len(list(upload_dir.iterdir())) == 1

    body = await _wait_batch(client, started["batch_id"])
    assert body["jobs"][0]["status"] == "succeeded"
    gateway.transcode_and_store.assert_awaited_once()

    resp = await client.delete(f"/api/v1/imports/{started['batch_id']}", headers=_ADMIN)
    assert resp.status_code == 204
    assert list(upload_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_upload_without_acceptable_files(client: AsyncClient, upload_dir: Path) -> None:
    resp = await client.post(
        "/api/v1/imports/uploads",
        headers=_ADMIN,
        files=[
            ("files", ("empty.mp3", b"", "audio/mpeg")),
            ("files", ("cover.jpg", b"\xff\xd8\xff", "image/jpeg")),
        ],
    )
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "NO_SUPPORTED_FILES"
    assert "empty.mp3" in error["message"]
    assert "cover.jpg" in error["message"]
    assert list(upload_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_upload_rejects_unknown_extension(client: AsyncClient, upload_dir: Path) -> None:
    resp = await client.post(
        "/api/v1/imports/uploads",
        headers=_ADMIN,
        files=[("files", ("cover.jpg", b"\xff\xd8\xff", "image/jpeg"))],
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "UNSUPPORTED_FORMAT"


# ---------------------------------------------------------------------------
# Event payloads
# ---------------------------------------------------------------------------


def test_event_payloads() -> None:
    batch_id = uuid.uuid4()
    job = ImportJob(candidate=ImportCandidate(source_ref="/band/b.mp3"), batch_id=batch_id)

    payload = _event_payload(job.snapshot())
    assert payload["type"] == "job"
    assert payload["batch_id"] == str(batch_id)
    assert payload["status"] == "pending"
    assert payload["retryable"] is False
    json.dumps(payload)

    tally = _event_payload(BatchTally(batch_id=batch_id, completed=1, failed=1, total=2))
    assert tally == {
        "type": "tally",
        "batch_id": str(batch_id),
        "completed": 1,
        "failed": 1,
        "total": 2,
        "skipped": 0,
    }

    job_id = uuid.uuid4()
    skipped = _event_payload(JobSkipped(job_id=job_id, batch_id=batch_id, source_ref="/band/c.mp3"))
    assert skipped == {
        "type": "skipped",
        "batch_id": str(batch_id),
        "job_id": str(job_id),
        "source_ref": "/band/c.mp3",
    }

    notice = _event_payload(AuthExpiredNotice(message="reconnect"))
    assert notice == {"type": "auth_expired", "message": "reconnect"}
