"""Paper-space layout shared by the PDF and DXF plan renderers.

Model coordinates are metres; paper coordinates are millimetres with the
origin at the bottom-left corner of a landscape sheet.  The title block
sits along the bottom edge, the drawing is centred in the space above it.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Sequence, Union

from pydantic import BaseModel, field_validator

from packages.core.errors import EmptyGeometry
from packages.core.types import DetectedWall, PaperSize, PlanFormat, Wall

logger = logging.getLogger(__name__)

# (width, height) in mm, landscape
PAPER_SIZES: dict[PaperSize, tuple[float, float]] = {
    PaperSize.A1: (841.0, 594.0),
    PaperSize.A3: (420.0, 297.0),
    PaperSize.A4: (297.0, 210.0),
}

MARGIN_MM = 15.0
TITLE_BLOCK_MM = 40.0
BORDER_INSET_MM = 10.0
DIMENSION_OFFSET_MM = 8.0

_SCALE_RE = re.compile(r"^\s*1\s*:\s*(\d+)\s*$")

AnyWall = Union[Wall, DetectedWall]


def parse_scale(scale: str) -> int:
    """``"1:100"`` → 100."""
    match = _SCALE_RE.match(scale)
    if not match or int(match.group(1)) <= 0:
        raise ValueError(f"scale must look like '1:N', got {scale!r}")
    return int(match.group(1))


class ExportOptions(BaseModel):
    format: PlanFormat = PlanFormat.PDF
    paper_size: PaperSize = PaperSize.A3
    scale: str = "1:100"
    floor_label: str = ""
    project_name: str = ""
    plan_reference: str = ""

    @field_validator("scale")
    @classmethod
    def _valid_scale(cls, v: str) -> str:
        return f"1:{parse_scale(v)}"

    @property
    def scale_denominator(self) -> int:
        return parse_scale(self.scale)


@dataclass
class PaperWall:
    x1: float
    y1: float
    x2: float
    y2: float
    thickness_mm: float
    length_mm: float

    def outline(self) -> list[tuple[float, float]]:
        """The four corners of the wall drawn at its scaled thickness."""
        dx, dy = self.x2 - self.x1, self.y2 - self.y1
        length = math.hypot(dx, dy) or 1.0
        half = self.thickness_mm / 2.0
        nx, ny = -dy / length * half, dx / length * half
        return [
            (self.x1 + nx, self.y1 + ny),
            (self.x2 + nx, self.y2 + ny),
            (self.x2 - nx, self.y2 - ny),
            (self.x1 - nx, self.y1 - ny),
        ]


@dataclass
class DimensionLine:
    x1: float
    y1: float
    x2: float
    y2: float
    label: str

    @property
    def angle(self) -> float:
        """Text rotation in degrees, kept readable (-90, 90]."""
        angle = math.degrees(math.atan2(self.y2 - self.y1, self.x2 - self.x1))
        if angle > 90:
            angle -= 180
        elif angle <= -90:
            angle += 180
        return angle

    @property
    def midpoint(self) -> tuple[float, float]:
        return (self.x1 + self.x2) / 2.0, (self.y1 + self.y2) / 2.0


@dataclass
class PlanLayout:
    paper_width: float
    paper_height: float
    scale: int
    offset_x: float
    offset_y: float
    walls: list[PaperWall] = field(default_factory=list)
    dimensions: list[DimensionLine] = field(default_factory=list)
    fits: bool = True

    @property
    def border(self) -> tuple[float, float, float, float]:
        """(x, y, width, height) of the drawing frame."""
        return (
            BORDER_INSET_MM,
            BORDER_INSET_MM,
            self.paper_width - 2 * BORDER_INSET_MM,
            self.paper_height - 2 * BORDER_INSET_MM,
        )

    @property
    def title_block(self) -> tuple[float, float, float, float]:
        """(x, y, width, height) of the title block along the bottom edge."""
        x, y, w, _ = self.border
        return x, y, w, TITLE_BLOCK_MM - BORDER_INSET_MM / 2


def calculate_layout(walls: Sequence[AnyWall], options: ExportOptions) -> PlanLayout:
    """Scale and centre *walls* on the sheet chosen in *options*."""
    if not walls:
        raise EmptyGeometry("cannot lay out a plan with no walls")

    paper_w, paper_h = PAPER_SIZES[options.paper_size]
    scale = options.scale_denominator
    drawable_w = paper_w - 2 * MARGIN_MM
    drawable_h = paper_h - TITLE_BLOCK_MM - 2 * MARGIN_MM

    xs = [v for w in walls for v in (w.start.x, w.end.x)]
    ys = [v for w in walls for v in (w.start.y, w.end.y)]
    min_x, min_y = min(xs), min(ys)
    extent_x = (max(xs) - min_x) * 1000.0 / scale
    extent_y = (max(ys) - min_y) * 1000.0 / scale

    fits = extent_x <= drawable_w and extent_y <= drawable_h
    if not fits:
        logger.warning(
            "Drawing %.0f×%.0f mm exceeds the %.0f×%.0f mm printable area of %s at %s",
            extent_x, extent_y, drawable_w, drawable_h, options.paper_size.value, options.scale,
        )

    offset_x = MARGIN_MM + (drawable_w - extent_x) / 2.0
    offset_y = MARGIN_MM + TITLE_BLOCK_MM + (drawable_h - extent_y) / 2.0

    def to_paper(x: float, y: float) -> tuple[float, float]:
        return (
            offset_x + (x - min_x) * 1000.0 / scale,
            offset_y + (y - min_y) * 1000.0 / scale,
        )

    paper_walls: list[PaperWall] = []
    dimensions: list[DimensionLine] = []
    for wall in walls:
        x1, y1 = to_paper(wall.start.x, wall.start.y)
        x2, y2 = to_paper(wall.end.x, wall.end.y)
        length_mm = wall.length * 1000.0
        paper_walls.append(
            PaperWall(x1, y1, x2, y2, wall.thickness * 1000.0 / scale, length_mm)
        )

        dx, dy = x2 - x1, y2 - y1
        paper_len = math.hypot(dx, dy)
        if paper_len < 1.0:
            # too short on paper to carry a readable dimension
            continue
        nx = -dy / paper_len * DIMENSION_OFFSET_MM
        ny = dx / paper_len * DIMENSION_OFFSET_MM
        dimensions.append(
            DimensionLine(x1 + nx, y1 + ny, x2 + nx, y2 + ny, f"{round(length_mm)}")
        )

    return PlanLayout(
        paper_width=paper_w,
        paper_height=paper_h,
        scale=scale,
        offset_x=offset_x,
        offset_y=offset_y,
        walls=paper_walls,
        dimensions=dimensions,
        fits=fits,
    )


def title_lines(options: ExportOptions, generated_on: str) -> list[str]:
    """Text rows of the title block, top to bottom."""
    return [
        options.project_name or "Survey",
        options.floor_label or "Floor plan",
        f"Ref: {options.plan_reference or '-'}",
        f"Scale {options.scale} @ {options.paper_size.value}",
        f"Date: {generated_on}",
    ]
