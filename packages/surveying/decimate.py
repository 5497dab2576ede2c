"""Voxel-grid decimation for the browser viewer copy of a scan."""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from packages.core.pointcloud import PointCloud
from packages.core.types import BBox

logger = logging.getLogger(__name__)

DEFAULT_TARGET_POINTS = 2_000_000


def voxel_edge_for_target(bounds: BBox, target_points: int) -> float:
    """Voxel edge length expected to leave about *target_points* occupied voxels.

    The bounds volume is split into *target_points* cubes.  Axes with no
    extent are ignored, so a flat cloud is split by area and a line by
    length.  Returns 0.0 when every point is identical.
    """
    if target_points <= 0:
        raise ValueError("target_points must be positive")
    extents = [
        bounds.max.x - bounds.min.x,
        bounds.max.y - bounds.min.y,
        bounds.max.z - bounds.min.z,
    ]
    active = [e for e in extents if e > 0]
    if not active:
        return 0.0
    measure = math.prod(active)
    return (measure / target_points) ** (1.0 / len(active))


def voxel_keys(positions: np.ndarray, origin: np.ndarray, edge: float) -> np.ndarray:
    """Integer (N, 3) voxel index of every point."""
    if edge <= 0:
        return np.zeros((len(positions), 3), dtype=np.int64)
    return np.floor((positions - origin) / edge).astype(np.int64)


def _resolve_target(count: int, target_points: Optional[int], ratio: Optional[float]) -> int:
    if ratio is not None:
        if not 0 < ratio <= 1:
            raise ValueError("ratio must be in (0, 1]")
        return max(1, math.ceil(count * ratio))
    target = DEFAULT_TARGET_POINTS if target_points is None else target_points
    if target <= 0:
        raise ValueError("target_points must be positive")
    return target


def decimate(
    cloud: PointCloud,
    target_points: Optional[int] = None,
    *,
    ratio: Optional[float] = None,
) -> PointCloud:
    """Reduce *cloud* to roughly *target_points* while keeping its coverage.

    Each occupied voxel keeps the centroid of its points (colours and
    intensity averaged, classification taken from the first point seen),
    so no occupied voxel is ever dropped.  A cloud already within budget is
    returned as a copy.
    """
    target = _resolve_target(cloud.count, target_points, ratio)
    if cloud.count <= target:
        logger.info("Decimation skipped: %d points within budget of %d", cloud.count, target)
        return cloud.subset(np.ones(cloud.count, dtype=bool))

    edge = voxel_edge_for_target(cloud.bounds, target)
    origin = np.array([cloud.bounds.min.x, cloud.bounds.min.y, cloud.bounds.min.z])
    keys = voxel_keys(cloud.positions, origin, edge)

    # Linear voxel index, then one pass through a dict to give every
    # occupied voxel an output slot in order of first appearance.
    dims = keys.max(axis=0) + 1
    linear = keys[:, 0] + dims[0] * (keys[:, 1] + dims[1] * keys[:, 2])
    slots: dict[int, int] = {}
    inverse = np.fromiter(
        (slots.setdefault(k, len(slots)) for k in linear.tolist()),
        dtype=np.int64,
        count=cloud.count,
    )
    n_voxels = len(slots)

    counts = np.bincount(inverse, minlength=n_voxels).astype(np.float64)

    def _mean(values: np.ndarray) -> np.ndarray:
        return np.bincount(inverse, weights=values, minlength=n_voxels) / counts

    positions = np.column_stack([_mean(cloud.positions[:, a]) for a in range(3)])

    colors = None
    if cloud.colors is not None:
        colors = np.column_stack([_mean(cloud.colors[:, a]) for a in range(3)])

    intensity = None
    if cloud.intensity is not None:
        intensity = np.rint(_mean(cloud.intensity.astype(np.float64))).astype(np.uint16)

    classification = None
    if cloud.classification is not None:
        # Slots are numbered in order of first appearance, so a point opens a
        # new slot exactly when its slot number exceeds every earlier one.
        running_max = np.maximum.accumulate(inverse)
        is_first = np.empty(cloud.count, dtype=bool)
        is_first[0] = True
        is_first[1:] = inverse[1:] > running_max[:-1]
        classification = cloud.classification[np.flatnonzero(is_first)]

    result = PointCloud(
        positions=positions,
        intensity=intensity,
        classification=classification,
        colors=colors,
    )
    logger.info(
        "  🧊 Decimated %d → %d points (voxel edge %.4f m, target %d)",
        cloud.count, result.count, edge, target,
    )
    return result
