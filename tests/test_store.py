"""Contract tests run against both metadata store implementations."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from packages.core.errors import InvalidTransition, NotFound
from packages.core.types import (
    AuditEntry,
    BBox,
    DetectedFloor,
    DetectedWall,
    PaperSize,
    Plan,
    PlanFormat,
    Point2D,
    Scan,
    ScanStatus,
    SourceFormat,
    Vec3,
)
from packages.surveying.sql_store import SqlMetadataStore
from packages.surveying.store import InMemoryMetadataStore


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        return InMemoryMetadataStore()
    return SqlMetadataStore(f"sqlite:///{tmp_path / 'survey.db'}")


def _scan(**kwargs) -> Scan:
    fields = dict(
        original_filename="site.e57",
        source_format=SourceFormat.E57,
        storage_path="scans/a/raw.e57",
        file_size_bytes=1234,
    )
    fields.update(kwargs)
    return Scan(**fields)


def _detections(n_floors: int = 2, n_walls: int = 3):
    out = []
    for i in range(n_floors):
        floor = DetectedFloor(
            label=f"F{i}", z_height=3.0 * i, z_range_min=3.0 * i - 0.05,
            z_range_max=3.0 * i + 0.05, point_count=100, confidence=0.5, sort_order=i,
        )
        walls = [
            DetectedWall(
                start=Point2D(x=0.0, y=float(j)),
                end=Point2D(x=4.0, y=float(j)),
                thickness=0.1, length=4.0, confidence=0.7,
            )
            for j in range(n_walls)
        ]
        out.append((floor, walls))
    return out


class TestScans:
    def test_create_and_get(self, store):
        scan = store.create_scan(_scan())
        loaded = store.get_scan(scan.id)
        assert loaded.original_filename == "site.e57"
        assert loaded.processing_status is ScanStatus.UPLOADED

    def test_missing(self, store):
        with pytest.raises(NotFound):
            store.get_scan("nope")

    def test_update_scan(self, store):
        scan = store.create_scan(_scan())
        bounds = BBox(min=Vec3(x=0, y=0, z=0), max=Vec3(x=1, y=2, z=3))
        store.update_scan(scan.id, point_count=10, decimated_point_count=5, bounds=bounds)

        loaded = store.get_scan(scan.id)
        assert loaded.point_count == 10
        assert loaded.bounds == bounds
        assert loaded.updated_at >= scan.updated_at

    def test_update_rejects_inconsistent_counts(self, store):
        scan = store.create_scan(_scan())
        with pytest.raises(ValueError):
            store.update_scan(scan.id, point_count=5, decimated_point_count=10)
        assert store.get_scan(scan.id).point_count is None

    def test_status_transitions(self, store):
        scan = store.create_scan(_scan())
        store.set_status(scan.id, ScanStatus.CONVERTING)
        store.set_status(scan.id, ScanStatus.PROCESSING)
        store.set_status(scan.id, ScanStatus.READY)
        assert store.get_scan(scan.id).processing_status is ScanStatus.READY

    def test_invalid_transition(self, store):
        scan = store.create_scan(_scan())
        with pytest.raises(InvalidTransition):
            store.set_status(scan.id, ScanStatus.READY)

    def test_failed_carries_message(self, store):
        scan = store.create_scan(_scan())
        store.mark_failed(scan.id, "TruncatedData: short")
        loaded = store.get_scan(scan.id)
        assert loaded.processing_status is ScanStatus.FAILED
        assert loaded.processing_error == "TruncatedData: short"

        # re-trigger clears the error
        store.set_status(scan.id, ScanStatus.PROCESSING)
        assert store.get_scan(scan.id).processing_error is None

    def test_list_by_status_and_age(self, store):
        a = store.create_scan(_scan())
        b = store.create_scan(_scan())
        store.set_status(b.id, ScanStatus.PROCESSING)

        processing = store.list_scans([ScanStatus.PROCESSING])
        assert [s.id for s in processing] == [b.id]
        assert {s.id for s in store.list_scans()} == {a.id, b.id}

        future = datetime.now(timezone.utc) + timedelta(minutes=1)
        past = datetime.now(timezone.utc) - timedelta(days=1)
        assert len(store.list_scans(updated_before=future)) == 2
        assert store.list_scans(updated_before=past) == []


class TestDetections:
    def test_replace_is_not_append(self, store):
        scan = store.create_scan(_scan())
        store.replace_detections(scan.id, _detections(2, 3))
        store.replace_detections(scan.id, _detections(1, 2))

        floors = store.list_floors(scan.id)
        assert len(floors) == 1
        assert len(store.list_walls(floors[0].id)) == 2

    def test_floors_in_height_order_with_labelled_walls(self, store):
        scan = store.create_scan(_scan())
        store.replace_detections(scan.id, _detections(2, 3))

        floors = store.list_floors(scan.id)
        assert [f.sort_order for f in floors] == [0, 1]
        walls = store.list_walls(floors[0].id)
        assert [w.label for w in walls] == ["W01", "W02", "W03"]
        assert all(w.floor_id == floors[0].id for w in walls)
        assert store.get_floor(floors[1].id).z_height == 3.0

    def test_mark_failed_clears_detections(self, store):
        scan = store.create_scan(_scan())
        store.set_status(scan.id, ScanStatus.PROCESSING)
        floors = store.replace_detections(scan.id, _detections())
        store.mark_failed(scan.id, "boom")

        assert store.list_floors(scan.id) == []
        assert store.list_walls(floors[0].id) == []

    def test_other_scans_untouched(self, store):
        a = store.create_scan(_scan())
        b = store.create_scan(_scan())
        store.replace_detections(a.id, _detections())
        store.replace_detections(b.id, _detections())
        store.mark_failed(a.id, "boom")
        assert len(store.list_floors(b.id)) == 2

    def test_unknown_floor(self, store):
        with pytest.raises(NotFound):
            store.get_floor("nope")


class TestPlansAndAudit:
    def test_references_increase(self, store):
        refs = [store.next_plan_reference() for _ in range(3)]
        assert refs == ["PLN-0001", "PLN-0002", "PLN-0003"]

    def test_add_and_get_plan(self, store):
        plan = Plan(
            floor_id="f1", reference=store.next_plan_reference(), format=PlanFormat.DXF,
            paper_size=PaperSize.A1, scale="1:50", storage_path="plans/PLN-0001.dxf",
            file_size_bytes=99, generated_by="me",
        )
        store.add_plan(plan)
        loaded = store.get_plan(plan.id)
        assert loaded.reference == "PLN-0001"
        assert loaded.format is PlanFormat.DXF
        assert store.list_plans("f1")[0].id == plan.id
        assert store.list_plans("other") == []

    def test_audit(self, store):
        store.record_audit(AuditEntry(scan_id="s1", outcome=ScanStatus.READY, detail="ok"))
        store.record_audit(AuditEntry(scan_id="s1", outcome=ScanStatus.FAILED, detail="bad"))
        store.record_audit(AuditEntry(scan_id="s2", outcome=ScanStatus.READY))
        entries = store.list_audit("s1")
        assert [e.outcome for e in entries] == [ScanStatus.READY, ScanStatus.FAILED]
