"""Export a stored floor as a PDF or DXF plan."""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional, Sequence

from packages.core.errors import EmptyGeometry
from packages.core.types import Plan, PlanFormat
from packages.surveying.dxf import render_dxf
from packages.surveying.layout import AnyWall, ExportOptions
from packages.surveying.pdf import render_pdf
from packages.surveying.storage import ObjectStore
from packages.surveying.store import MetadataStore

logger = logging.getLogger(__name__)


def render_plan(
    walls: Sequence[AnyWall],
    options: ExportOptions,
    generated_on: Optional[date] = None,
) -> bytes:
    if options.format is PlanFormat.DXF:
        return render_dxf(walls, options, generated_on)
    return render_pdf(walls, options, generated_on)


def export_floor_plan(
    floor_id: str,
    options: ExportOptions,
    store: MetadataStore,
    objects: ObjectStore,
    generated_by: str = "system",
) -> Plan:
    """Render *floor_id*'s walls, upload the drawing and record a new plan.

    Each call creates a new plan with the next reference; earlier plans are
    never touched.
    """
    floor = store.get_floor(floor_id)
    walls = store.list_walls(floor_id)
    if not walls:
        raise EmptyGeometry(f"floor {floor_id} ({floor.label}) has no walls to draw")

    scan = store.get_scan(floor.scan_id)
    reference = store.next_plan_reference()
    options = options.model_copy(
        update={
            "plan_reference": reference,
            "floor_label": options.floor_label or floor.label,
            "project_name": options.project_name or scan.scan_name,
        }
    )

    data = render_plan(walls, options)
    path = f"plans/{reference}.{options.format.value}"
    objects.put(path, data)

    plan = store.add_plan(
        Plan(
            floor_id=floor_id,
            reference=reference,
            format=options.format,
            paper_size=options.paper_size,
            scale=options.scale,
            storage_path=path,
            file_size_bytes=len(data),
            generated_by=generated_by,
        )
    )
    logger.info(
        "  📐 Exported %s as %s (%s, %s @ %s)",
        floor.label, reference, options.format.value, options.paper_size.value, options.scale,
    )
    return plan
