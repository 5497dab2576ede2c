"""End-to-end tests for the scan processor."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from packages.core.config import PipelineSettings
from packages.core.types import ScanStatus
from packages.surveying.ingest import register_upload
from packages.surveying.process import ScanProcessor, process_file
from packages.surveying.serialize import deserialize_point_cloud
from packages.surveying.sql_store import SqlMetadataStore
from packages.surveying.storage import InMemoryObjectStore
from packages.surveying.store import InMemoryMetadataStore
from tests.conftest import make_las_bytes, room_points, write_e57


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return InMemoryMetadataStore()
    return SqlMetadataStore("sqlite://")


@pytest.fixture()
def objects() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture()
def settings() -> PipelineSettings:
    settings = PipelineSettings()
    settings.decimation.target_points = 5000
    return settings


def _upload(filename, data, store, objects, settings):
    return register_upload(filename, data, store, objects, settings)


class TestScanProcessor:
    def test_las_scan_becomes_ready(self, store, objects, settings, room_las_bytes):
        scan = _upload("room.las", room_las_bytes, store, objects, settings)
        result = ScanProcessor(store, objects, settings).process(scan.id)

        assert result.status is ScanStatus.READY
        assert result.error is None
        loaded = store.get_scan(scan.id)
        assert loaded.processing_status is ScanStatus.READY
        assert loaded.point_count == len(room_points())
        assert loaded.decimated_point_count <= loaded.point_count
        assert loaded.converted_storage_path is None
        assert loaded.bounds is not None

        floors = store.list_floors(scan.id)
        assert len(floors) == 1
        assert len(store.list_walls(floors[0].id)) == 4
        assert result.floors_detected == 1
        assert result.walls_detected == 4

        viewer = deserialize_point_cloud(objects.get(loaded.decimated_storage_path))
        assert viewer.count == loaded.decimated_point_count
        assert loaded.decimated_storage_path.endswith("room.svpc")

    def test_e57_goes_through_conversion(self, store, objects, settings, tmp_path: Path):
        e57_file = tmp_path / "room.e57"
        write_e57(e57_file, room_points())
        scan = _upload("room.e57", e57_file.read_bytes(), store, objects, settings)

        result = ScanProcessor(store, objects, settings).process(scan.id)

        assert result.status is ScanStatus.READY
        loaded = store.get_scan(scan.id)
        assert loaded.converted_storage_path.endswith("room.las")
        assert objects.get(loaded.converted_storage_path)[:4] == b"LASF"
        assert loaded.point_count == len(room_points())

    def test_rerun_replaces_detections(self, store, objects, settings, room_las_bytes):
        scan = _upload("room.las", room_las_bytes, store, objects, settings)
        processor = ScanProcessor(store, objects, settings)
        processor.process(scan.id)
        first_floors = store.list_floors(scan.id)

        processor.process(scan.id)
        floors = store.list_floors(scan.id)
        assert len(floors) == len(first_floors) == 1
        assert len(store.list_walls(floors[0].id)) == 4
        assert store.list_walls(first_floors[0].id) == []

    def test_truncated_file_fails(self, store, objects, settings, room_las_bytes):
        scan = _upload("room.las", room_las_bytes[:-100], store, objects, settings)
        result = ScanProcessor(store, objects, settings).process(scan.id)

        assert result.status is ScanStatus.FAILED
        loaded = store.get_scan(scan.id)
        assert loaded.processing_status is ScanStatus.FAILED
        assert loaded.processing_error.startswith("TruncatedData")
        assert store.list_floors(scan.id) == []

    def test_failure_after_success_leaves_no_rows(self, store, objects, settings, room_las_bytes):
        scan = _upload("room.las", room_las_bytes, store, objects, settings)
        processor = ScanProcessor(store, objects, settings)
        processor.process(scan.id)
        assert store.list_floors(scan.id)

        corrupt = bytearray(room_las_bytes)
        corrupt[0:4] = b"NOPE"
        objects.put(scan.storage_path, bytes(corrupt))
        result = processor.process(scan.id)

        assert result.status is ScanStatus.FAILED
        assert store.list_floors(scan.id) == []
        assert "MalformedHeader" in store.get_scan(scan.id).processing_error

    def test_missing_object_is_download_failure(self, store, objects, settings, room_las_bytes):
        scan = _upload("room.las", room_las_bytes, store, objects, settings)
        objects.delete(scan.storage_path)

        result = ScanProcessor(store, objects, settings).process(scan.id)
        assert result.status is ScanStatus.FAILED
        assert result.error.startswith("DownloadFailure")
        assert scan.storage_path in result.error

    def test_zero_floors_is_not_an_error(self, store, objects, settings):
        pts = np.random.default_rng(0).uniform(0.0, 5.0, size=(3000, 3))
        scan = _upload("noise.las", make_las_bytes(pts), store, objects, settings)

        result = ScanProcessor(store, objects, settings).process(scan.id)
        assert result.status is ScanStatus.READY
        assert result.floors_detected == 0
        assert store.list_floors(scan.id) == []

    def test_outcomes_are_audited(self, store, objects, settings, room_las_bytes):
        good = _upload("room.las", room_las_bytes, store, objects, settings)
        bad = _upload("bad.las", b"junk" * 100, store, objects, settings)
        processor = ScanProcessor(store, objects, settings)
        processor.process(good.id)
        processor.process(bad.id)

        assert [e.outcome for e in store.list_audit(good.id)] == [ScanStatus.READY]
        assert [e.outcome for e in store.list_audit(bad.id)] == [ScanStatus.FAILED]

    def test_in_flight_scan_is_not_restarted(self, store, objects, settings, room_las_bytes):
        scan = _upload("room.las", room_las_bytes, store, objects, settings)
        store.set_status(scan.id, ScanStatus.PROCESSING)

        result = ScanProcessor(store, objects, settings).process(scan.id)
        assert result.status is ScanStatus.PROCESSING
        assert store.get_scan(scan.id).processing_status is ScanStatus.PROCESSING


class TestProcessFile:
    def test_summary(self, tmp_path: Path, room_las_bytes):
        las_file = tmp_path / "room.las"
        las_file.write_bytes(room_las_bytes)

        summary, decimated = process_file(las_file)

        assert summary.source_file == "room.las"
        assert summary.point_count == len(room_points())
        assert summary.decimated_point_count == decimated.count
        assert len(summary.floors) == 1
        assert len(summary.floors[0].walls) == 4
