"""In-memory point cloud passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from packages.core.types import BBox, Vec3


def compute_bounds(points: np.ndarray) -> BBox:
    """Return the axis-aligned bounding box of an (N, 3) point array."""
    if len(points) == 0:
        zero = Vec3(x=0.0, y=0.0, z=0.0)
        return BBox(min=zero, max=zero)
    mins = points.min(axis=0)
    maxs = points.max(axis=0)
    return BBox(
        min=Vec3(x=float(mins[0]), y=float(mins[1]), z=float(mins[2])),
        max=Vec3(x=float(maxs[0]), y=float(maxs[1]), z=float(maxs[2])),
    )


@dataclass(frozen=True)
class PointCloud:
    """Decoded points plus optional per-point attributes.

    ``positions`` is an (N, 3) float64 array in metres.  ``colors`` is
    (N, 3) in [0, 1].  Stages never write into these arrays; each stage
    builds a new ``PointCloud``.
    """

    positions: np.ndarray
    intensity: Optional[np.ndarray] = None
    classification: Optional[np.ndarray] = None
    colors: Optional[np.ndarray] = None
    bounds: Optional[BBox] = None

    def __post_init__(self):
        positions = np.asarray(self.positions, dtype=np.float64).reshape(-1, 3)
        object.__setattr__(self, "positions", positions)
        n = len(positions)
        for name in ("intensity", "classification", "colors"):
            value = getattr(self, name)
            if value is not None and len(value) != n:
                raise ValueError(f"{name} has {len(value)} entries for {n} points")
        if self.bounds is None:
            object.__setattr__(self, "bounds", compute_bounds(positions))

    @property
    def count(self) -> int:
        return len(self.positions)

    @property
    def z(self) -> np.ndarray:
        return self.positions[:, 2]

    def subset(self, mask: np.ndarray) -> "PointCloud":
        """Return a new cloud holding only the points selected by *mask*."""
        return PointCloud(
            positions=self.positions[mask],
            intensity=None if self.intensity is None else self.intensity[mask],
            classification=None if self.classification is None else self.classification[mask],
            colors=None if self.colors is None else self.colors[mask],
        )
