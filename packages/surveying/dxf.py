"""DXF floor-plan rendering with ezdxf.

Layers:
- WALLS: closed outline of every wall at its scaled thickness
- DIMENSIONS: offset dimension lines with the wall length in mm
- TITLE: title block text
- BORDER: drawing frame and title block box
"""

from __future__ import annotations

import io
import logging
from datetime import date
from typing import Optional, Sequence

import ezdxf
from ezdxf import units
from ezdxf.enums import TextEntityAlignment

from packages.surveying.layout import AnyWall, ExportOptions, calculate_layout, title_lines

logger = logging.getLogger(__name__)

LAYER_WALLS = "WALLS"
LAYER_DIMENSIONS = "DIMENSIONS"
LAYER_TITLE = "TITLE"
LAYER_BORDER = "BORDER"

# AutoCAD Color Index
_LAYER_COLORS = {
    LAYER_WALLS: 7,
    LAYER_DIMENSIONS: 3,
    LAYER_TITLE: 7,
    LAYER_BORDER: 8,
}


def _rectangle(x: float, y: float, w: float, h: float) -> list[tuple[float, float]]:
    return [(x, y), (x + w, y), (x + w, y + h), (x, y + h)]


def render_dxf(
    walls: Sequence[AnyWall],
    options: ExportOptions,
    generated_on: Optional[date] = None,
) -> bytes:
    """Draw *walls* in paper-space millimetres and return the DXF bytes."""
    layout = calculate_layout(walls, options)
    generated_on = generated_on or date.today()

    doc = ezdxf.new(dxfversion="R2010")
    doc.units = units.MM
    for name, color in _LAYER_COLORS.items():
        doc.layers.add(name, color=color, linetype="CONTINUOUS")
    msp = doc.modelspace()

    for wall in layout.walls:
        msp.add_lwpolyline(wall.outline(), close=True, dxfattribs={"layer": LAYER_WALLS})

    for dim in layout.dimensions:
        msp.add_line((dim.x1, dim.y1), (dim.x2, dim.y2), dxfattribs={"layer": LAYER_DIMENSIONS})
        msp.add_text(
            dim.label,
            height=2.5,
            dxfattribs={"layer": LAYER_DIMENSIONS, "rotation": dim.angle},
        ).set_placement(dim.midpoint, align=TextEntityAlignment.BOTTOM_CENTER)

    msp.add_lwpolyline(_rectangle(*layout.border), close=True, dxfattribs={"layer": LAYER_BORDER})
    tx, ty, tw, th = layout.title_block
    msp.add_lwpolyline(_rectangle(tx, ty, tw, th), close=True, dxfattribs={"layer": LAYER_BORDER})

    rows = title_lines(options, generated_on.isoformat())
    step = th / (len(rows) + 1)
    for i, row in enumerate(rows):
        msp.add_text(
            row,
            height=3.5 if i == 0 else 2.5,
            dxfattribs={"layer": LAYER_TITLE},
        ).set_placement((tx + 5, ty + th - step * (i + 1)), align=TextEntityAlignment.MIDDLE_LEFT)

    stream = io.StringIO()
    doc.write(stream)
    data = stream.getvalue().encode("utf-8")
    logger.info("Rendered DXF plan: %d wall(s), %d bytes", len(layout.walls), len(data))
    return data
