"""PDF floor-plan rendering with matplotlib."""

from __future__ import annotations

import io
import logging
from datetime import date
from typing import Optional, Sequence

from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.figure import Figure
from matplotlib.patches import Polygon, Rectangle

from packages.surveying.layout import AnyWall, ExportOptions, calculate_layout, title_lines

logger = logging.getLogger(__name__)

MM_PER_INCH = 25.4


def render_pdf(
    walls: Sequence[AnyWall],
    options: ExportOptions,
    generated_on: Optional[date] = None,
) -> bytes:
    """Draw *walls* on one landscape sheet and return the PDF bytes."""
    layout = calculate_layout(walls, options)
    generated_on = generated_on or date.today()

    fig = Figure(figsize=(layout.paper_width / MM_PER_INCH, layout.paper_height / MM_PER_INCH))
    FigureCanvasAgg(fig)
    ax = fig.add_axes((0, 0, 1, 1))
    ax.set_xlim(0, layout.paper_width)
    ax.set_ylim(0, layout.paper_height)
    ax.set_aspect("equal")
    ax.axis("off")

    for wall in layout.walls:
        ax.add_patch(
            Polygon(wall.outline(), closed=True, facecolor="black", edgecolor="black", linewidth=0.3)
        )

    for dim in layout.dimensions:
        ax.plot([dim.x1, dim.x2], [dim.y1, dim.y2], color="dimgray", linewidth=0.3)
        mx, my = dim.midpoint
        ax.text(
            mx, my, dim.label,
            fontsize=5, ha="center", va="bottom",
            rotation=dim.angle, rotation_mode="anchor", color="dimgray",
        )

    bx, by, bw, bh = layout.border
    ax.add_patch(Rectangle((bx, by), bw, bh, fill=False, edgecolor="black", linewidth=0.8))

    tx, ty, tw, th = layout.title_block
    ax.add_patch(Rectangle((tx, ty), tw, th, fill=False, edgecolor="black", linewidth=0.5))
    rows = title_lines(options, generated_on.isoformat())
    step = th / (len(rows) + 1)
    for i, row in enumerate(rows):
        ax.text(
            tx + 5, ty + th - step * (i + 1), row,
            fontsize=9 if i == 0 else 7,
            fontweight="bold" if i == 0 else "normal",
            va="center",
        )

    buf = io.BytesIO()
    fig.savefig(buf, format="pdf")
    data = buf.getvalue()
    logger.info("Rendered PDF plan: %d wall(s), %d bytes", len(layout.walls), len(data))
    return data
