"""Tests for the FastAPI backend (apps/api/main.py)."""

from __future__ import annotations

import asyncio
import io

import pytest
from fastapi import UploadFile
from fastapi.testclient import TestClient
from plyfile import PlyData

from apps.api.main import UPLOAD_CHUNK_BYTES, _read_limited, app, configure
from packages.core.config import PipelineSettings
from packages.core.errors import FileTooLarge
from packages.core.types import Scan, SourceFormat
from packages.surveying.storage import InMemoryObjectStore
from packages.surveying.store import InMemoryMetadataStore


@pytest.fixture()
def runtime():
    """Fresh in-memory stores for every test."""
    settings = PipelineSettings(max_upload_bytes=50 * 1024 * 1024)
    settings.decimation.target_points = 5000
    rt = configure(InMemoryMetadataStore(), InMemoryObjectStore(), settings)
    yield rt
    rt.dispatcher.shutdown()


@pytest.fixture()
def client(runtime) -> TestClient:
    return TestClient(app)


def _upload(client: TestClient, name: str, data: bytes):
    return client.post("/scans", files={"file": (name, io.BytesIO(data), "application/octet-stream")})


def _upload_and_wait(client: TestClient, runtime, data: bytes) -> str:
    r = _upload(client, "room.las", data)
    assert r.status_code == 202
    scan_id = r.json()["id"]
    runtime.dispatcher.drain(timeout=60)
    return scan_id


class TestHealth:
    def test_health(self, client: TestClient):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"


class TestUpload:
    def test_upload_and_process(self, client: TestClient, runtime, room_las_bytes):
        scan_id = _upload_and_wait(client, runtime, room_las_bytes)

        r = client.get(f"/scans/{scan_id}")
        assert r.status_code == 200
        body = r.json()
        assert body["scan"]["processing_status"] == "ready"
        assert body["scan"]["original_filename"] == "room.las"
        assert len(body["floors"]) == 1
        assert len(body["floors"][0]["walls"]) == 4
        assert body["floors"][0]["plans"] == []

    def test_unsupported_extension(self, client: TestClient):
        r = _upload(client, "cloud.ply", b"ply\n")
        assert r.status_code == 415

    def test_too_large(self, client: TestClient, runtime):
        runtime.settings.max_upload_bytes = 10
        r = _upload(client, "cloud.las", b"x" * 11)
        assert r.status_code == 413
        assert runtime.store.list_scans() == []

    def test_stream_stops_at_limit(self):
        upload = UploadFile(io.BytesIO(b"x" * (3 * UPLOAD_CHUNK_BYTES)), filename="big.las")
        with pytest.raises(FileTooLarge):
            asyncio.run(_read_limited(upload, UPLOAD_CHUNK_BYTES + 1))
        # the third chunk is never read
        assert upload.file.tell() == 2 * UPLOAD_CHUNK_BYTES

    def test_stream_within_limit(self):
        upload = UploadFile(io.BytesIO(b"abc"), filename="small.las")
        assert asyncio.run(_read_limited(upload, 10)) == b"abc"

    def test_corrupt_file_fails_with_message(self, client: TestClient, runtime):
        scan_id = _upload_and_wait(client, runtime, b"garbage" * 100)
        scan = client.get(f"/scans/{scan_id}").json()["scan"]
        assert scan["processing_status"] == "failed"
        assert scan["processing_error"].startswith("MalformedHeader")

    def test_list_and_filter(self, client: TestClient, runtime, room_las_bytes):
        scan_id = _upload_and_wait(client, runtime, room_las_bytes)
        assert [s["id"] for s in client.get("/scans").json()] == [scan_id]
        assert client.get("/scans", params={"status": "failed"}).json() == []

    def test_unknown_scan(self, client: TestClient):
        assert client.get("/scans/nope").status_code == 404


class TestPointCloud:
    def test_svpc_and_ply(self, client: TestClient, runtime, room_las_bytes):
        scan_id = _upload_and_wait(client, runtime, room_las_bytes)
        scan = client.get(f"/scans/{scan_id}").json()["scan"]

        r = client.get(f"/scans/{scan_id}/point-cloud")
        assert r.status_code == 200
        assert r.content[:4] == b"SVPC"

        r = client.get(f"/scans/{scan_id}/point-cloud", params={"format": "ply"})
        ply = PlyData.read(io.BytesIO(r.content))
        assert ply["vertex"].count == scan["decimated_point_count"]

    def test_not_ready(self, client: TestClient, runtime):
        scan = runtime.store.create_scan(
            Scan(
                original_filename="a.las", source_format=SourceFormat.LAS,
                storage_path="scans/a/raw.las", file_size_bytes=1,
            )
        )
        assert client.get(f"/scans/{scan.id}/point-cloud").status_code == 404

    def test_bad_format(self, client: TestClient, runtime, room_las_bytes):
        scan_id = _upload_and_wait(client, runtime, room_las_bytes)
        r = client.get(f"/scans/{scan_id}/point-cloud", params={"format": "xyz"})
        assert r.status_code == 422


class TestReprocess:
    def test_reprocess_ready_scan(self, client: TestClient, runtime, room_las_bytes):
        scan_id = _upload_and_wait(client, runtime, room_las_bytes)
        first_floor = client.get(f"/scans/{scan_id}").json()["floors"][0]["id"]

        r = client.post(f"/scans/{scan_id}/reprocess")
        assert r.status_code == 202
        runtime.dispatcher.drain(timeout=60)

        body = client.get(f"/scans/{scan_id}").json()
        assert body["scan"]["processing_status"] == "ready"
        assert len(body["floors"]) == 1
        assert body["floors"][0]["id"] != first_floor


class TestExport:
    def test_export_and_download(self, client: TestClient, runtime, room_las_bytes):
        scan_id = _upload_and_wait(client, runtime, room_las_bytes)
        floor_id = client.get(f"/scans/{scan_id}").json()["floors"][0]["id"]

        r = client.post(
            f"/floors/{floor_id}/export",
            json={"format": "dxf", "paper_size": "A4", "scale": "1:50", "generated_by": "surveyor"},
        )
        assert r.status_code == 201
        plan = r.json()
        assert plan["reference"] == "PLN-0001"
        assert plan["generated_by"] == "surveyor"

        r = client.get(f"/plans/{plan['id']}/download")
        assert r.status_code == 200
        assert "SECTION" in r.text[:40]
        assert "PLN-0001.dxf" in r.headers["content-disposition"]

        plans = client.get(f"/scans/{scan_id}").json()["floors"][0]["plans"]
        assert [p["id"] for p in plans] == [plan["id"]]

    def test_pdf_export(self, client: TestClient, runtime, room_las_bytes):
        scan_id = _upload_and_wait(client, runtime, room_las_bytes)
        floor_id = client.get(f"/scans/{scan_id}").json()["floors"][0]["id"]

        plan = client.post(f"/floors/{floor_id}/export", json={}).json()
        r = client.get(f"/plans/{plan['id']}/download")
        assert r.headers["content-type"] == "application/pdf"
        assert r.content.startswith(b"%PDF")

    def test_invalid_scale(self, client: TestClient, runtime, room_las_bytes):
        scan_id = _upload_and_wait(client, runtime, room_las_bytes)
        floor_id = client.get(f"/scans/{scan_id}").json()["floors"][0]["id"]
        r = client.post(f"/floors/{floor_id}/export", json={"scale": "big"})
        assert r.status_code == 422

    def test_unknown_floor(self, client: TestClient):
        assert client.post("/floors/nope/export", json={}).status_code == 404


class TestMaintenance:
    def test_requeue_nothing_stuck(self, client: TestClient, runtime, room_las_bytes):
        _upload_and_wait(client, runtime, room_las_bytes)
        r = client.post("/maintenance/requeue-stuck", params={"older_than_seconds": 0})
        assert r.status_code == 200
        assert r.json() == {"requeued": []}
