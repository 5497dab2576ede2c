"""Tests for plan layout and PDF / DXF export."""

from __future__ import annotations

import io
import logging

import ezdxf
import pytest

from packages.core.errors import EmptyGeometry, NotFound
from packages.core.types import (
    DetectedFloor,
    DetectedWall,
    PaperSize,
    PlanFormat,
    Point2D,
    Scan,
    SourceFormat,
)
from packages.surveying.dxf import render_dxf
from packages.surveying.export import export_floor_plan
from packages.surveying.layout import (
    MARGIN_MM,
    TITLE_BLOCK_MM,
    ExportOptions,
    calculate_layout,
    parse_scale,
)
from packages.surveying.pdf import render_pdf
from packages.surveying.storage import InMemoryObjectStore
from packages.surveying.store import InMemoryMetadataStore


def _wall(x1: float, y1: float, x2: float, y2: float) -> DetectedWall:
    length = ((x2 - x1) ** 2 + (y2 - y1) ** 2) ** 0.5
    return DetectedWall(
        start=Point2D(x=x1, y=y1),
        end=Point2D(x=x2, y=y2),
        thickness=0.2,
        length=length,
        confidence=0.9,
    )


@pytest.fixture()
def square_walls() -> list[DetectedWall]:
    return [
        _wall(0, 0, 4, 0),
        _wall(4, 0, 4, 4),
        _wall(4, 4, 0, 4),
        _wall(0, 4, 0, 0),
    ]


class TestScale:
    def test_parse(self):
        assert parse_scale("1:100") == 100
        assert parse_scale(" 1 : 50 ") == 50

    @pytest.mark.parametrize("bad", ["100", "2:100", "1:0", "1:x", ""])
    def test_rejects(self, bad: str):
        with pytest.raises(ValueError):
            parse_scale(bad)

    def test_options_validate_scale(self):
        with pytest.raises(ValueError):
            ExportOptions(scale="one to a hundred")
        assert ExportOptions(scale="1 : 200").scale == "1:200"


class TestLayout:
    def test_transform_and_centring(self, square_walls):
        layout = calculate_layout(square_walls, ExportOptions(paper_size=PaperSize.A3, scale="1:100"))

        assert (layout.paper_width, layout.paper_height) == (420.0, 297.0)
        # 4 m at 1:100 is 40 mm on paper
        xs = [v for w in layout.walls for v in (w.x1, w.x2)]
        ys = [v for w in layout.walls for v in (w.y1, w.y2)]
        assert max(xs) - min(xs) == pytest.approx(40.0)
        assert max(ys) - min(ys) == pytest.approx(40.0)

        drawable_w = 420.0 - 2 * MARGIN_MM
        drawable_h = 297.0 - TITLE_BLOCK_MM - 2 * MARGIN_MM
        assert (min(xs) + max(xs)) / 2 == pytest.approx(MARGIN_MM + drawable_w / 2)
        assert (min(ys) + max(ys)) / 2 == pytest.approx(MARGIN_MM + TITLE_BLOCK_MM + drawable_h / 2)
        assert layout.fits

    def test_dimensions_are_offset_and_labelled(self, square_walls):
        layout = calculate_layout(square_walls, ExportOptions())
        assert len(layout.dimensions) == 4
        first = layout.dimensions[0]
        assert first.label == "4000"
        # bottom wall runs +x, so its dimension sits 8 mm above it
        assert first.y1 - layout.walls[0].y1 == pytest.approx(8.0)

    def test_wall_thickness_is_scaled(self, square_walls):
        layout = calculate_layout(square_walls, ExportOptions(scale="1:50"))
        assert layout.walls[0].thickness_mm == pytest.approx(4.0)

    def test_oversized_drawing_warns(self, caplog):
        walls = [_wall(0, 0, 100, 0)]
        with caplog.at_level(logging.WARNING):
            layout = calculate_layout(walls, ExportOptions(paper_size=PaperSize.A4, scale="1:100"))
        assert not layout.fits
        assert "exceeds" in caplog.text

    def test_empty(self):
        with pytest.raises(EmptyGeometry):
            calculate_layout([], ExportOptions())


class TestRenderers:
    def test_pdf_signature(self, square_walls):
        data = render_pdf(square_walls, ExportOptions(format=PlanFormat.PDF))
        assert len(data) > 0
        assert data.startswith(b"%PDF")

    def test_dxf_signature(self, square_walls):
        data = render_dxf(square_walls, ExportOptions(format=PlanFormat.DXF))
        assert len(data) > 0
        text = data.decode("utf-8")
        assert text.lstrip().startswith("0")
        assert "SECTION" in text[:40]

    def test_dxf_content(self, square_walls):
        data = render_dxf(square_walls, ExportOptions(format=PlanFormat.DXF, plan_reference="PLN-0042"))
        doc = ezdxf.read(io.StringIO(data.decode("utf-8")))
        msp = doc.modelspace()

        for layer in ("WALLS", "DIMENSIONS", "TITLE", "BORDER"):
            assert layer in doc.layers
        walls = msp.query('LWPOLYLINE[layer=="WALLS"]')
        assert len(walls) == 4
        texts = [t.dxf.text for t in msp.query("TEXT")]
        assert "4000" in texts
        assert any("PLN-0042" in t for t in texts)
        assert any("1:100" in t for t in texts)

    @pytest.mark.parametrize("render", [render_pdf, render_dxf])
    def test_empty_wall_list(self, render):
        with pytest.raises(EmptyGeometry):
            render([], ExportOptions())


class TestExportFloorPlan:
    @pytest.fixture()
    def stored_floor(self, square_walls):
        store = InMemoryMetadataStore()
        scan = store.create_scan(
            Scan(
                original_filename="house.las",
                scan_name="House",
                source_format=SourceFormat.LAS,
                storage_path="scans/x/raw.las",
                file_size_bytes=1,
            )
        )
        floor = DetectedFloor(
            label="Ground Floor", z_height=0.0, z_range_min=-0.05, z_range_max=0.05,
            point_count=100, confidence=0.8,
        )
        empty = floor.model_copy(update={"label": "Level 1", "z_height": 3.0, "sort_order": 1})
        floors = store.replace_detections(scan.id, [(floor, square_walls), (empty, [])])
        return store, floors

    def test_creates_plan_and_artifact(self, stored_floor):
        store, floors = stored_floor
        objects = InMemoryObjectStore()

        plan = export_floor_plan(
            floors[0].id, ExportOptions(format=PlanFormat.PDF), store, objects, "tester"
        )

        assert plan.reference == "PLN-0001"
        assert plan.storage_path == "plans/PLN-0001.pdf"
        assert plan.generated_by == "tester"
        assert objects.get(plan.storage_path).startswith(b"%PDF")
        assert plan.file_size_bytes == len(objects.get(plan.storage_path))
        assert store.get_plan(plan.id) == plan

    def test_each_export_is_a_new_plan(self, stored_floor):
        store, floors = stored_floor
        objects = InMemoryObjectStore()
        first = export_floor_plan(floors[0].id, ExportOptions(), store, objects)
        second = export_floor_plan(
            floors[0].id, ExportOptions(format=PlanFormat.DXF), store, objects
        )

        assert first.reference == "PLN-0001"
        assert second.reference == "PLN-0002"
        assert [p.id for p in store.list_plans(floors[0].id)] == [first.id, second.id]

    def test_floor_without_walls(self, stored_floor):
        store, floors = stored_floor
        with pytest.raises(EmptyGeometry):
            export_floor_plan(floors[1].id, ExportOptions(), store, InMemoryObjectStore())
        assert store.list_plans() == []

    def test_unknown_floor(self, stored_floor):
        store, _ = stored_floor
        with pytest.raises(NotFound):
            export_floor_plan("missing", ExportOptions(), store, InMemoryObjectStore())
