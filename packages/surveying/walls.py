"""Wall segment extraction from a horizontal slice of a floor.

A thin slice just above a floor surface cuts every wall as a dense,
line-like cluster of points while open floor area stays sparse.  Lines
are fitted with sequential RANSAC:

1. Fit the best-supported line to the remaining slice points.
2. Refine it by least squares over its inliers.
3. Drop sparsely populated stretches of the line and split the rest
   into runs at gaps (door openings, collinear walls).
4. Remove the inliers and repeat.

The segments are then merged where collinear and snapped to the dominant
wall direction.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np

from packages.core.config import WallDetectionConfig
from packages.core.pointcloud import PointCloud
from packages.core.types import DetectedWall, Point2D
from packages.surveying.ransac import fit_line_ransac, line_distances, refine_line

logger = logging.getLogger(__name__)


@dataclass
class _Segment:
    start: np.ndarray
    end: np.ndarray
    inliers: int
    thickness: float

    @property
    def length(self) -> float:
        return float(np.linalg.norm(self.end - self.start))

    @property
    def direction(self) -> np.ndarray:
        return (self.end - self.start) / max(self.length, 1e-12)

    @property
    def angle(self) -> float:
        """Orientation in degrees, in [0, 180)."""
        d = self.end - self.start
        return math.degrees(math.atan2(d[1], d[0])) % 180.0

    @property
    def midpoint(self) -> np.ndarray:
        return (self.start + self.end) / 2.0

    def line_distance(self, p: np.ndarray) -> float:
        """Distance from *p* to the infinite line through this segment."""
        d = self.direction
        rel = p - self.start
        return abs(rel[0] * d[1] - rel[1] * d[0])


def _angle_diff(a: float, b: float) -> float:
    diff = abs(a - b) % 180.0
    return min(diff, 180.0 - diff)


def slice_points(cloud: PointCloud, z_height: float, config: WallDetectionConfig) -> np.ndarray:
    """XY coordinates of the points in the wall slice above *z_height*."""
    centre = z_height + config.slice_offset
    half = config.slice_thickness / 2.0
    z = cloud.z
    mask = (z >= centre - half) & (z <= centre + half)
    return cloud.positions[mask, :2]


def _split_runs(
    inliers: np.ndarray,
    normal: np.ndarray,
    offset: float,
    config: WallDetectionConfig,
) -> list[_Segment]:
    """Cut the inliers of one line into dense, gap-separated segments.

    The line is binned along its direction; bins holding fewer than
    ``min_occupancy`` times the median occupied-bin count are dropped, so
    stray clutter inside the tolerance band cannot stretch a wall's ends.
    """
    direction = np.array([normal[1], -normal[0]])
    foot = normal * offset
    t = inliers @ direction
    bins = np.floor((t - t.min()) / config.occupancy_bin).astype(np.int64)
    counts = np.bincount(bins)
    threshold = max(1.0, config.min_occupancy * float(np.median(counts[counts > 0])))
    dense = np.flatnonzero(counts[bins] >= threshold)

    order = dense[np.argsort(t[dense], kind="stable")]
    breaks = np.flatnonzero(np.diff(t[order]) > config.max_gap) + 1

    segments: list[_Segment] = []
    for run in np.split(order, breaks):
        if len(run) < config.min_inliers:
            continue
        run_t = t[run]
        residual = inliers[run] @ normal - offset
        spread = float(np.percentile(residual, 95) - np.percentile(residual, 5))
        segments.append(
            _Segment(
                start=foot + run_t.min() * direction,
                end=foot + run_t.max() * direction,
                inliers=len(run),
                thickness=max(spread, config.min_thickness),
            )
        )
    return segments


def _fit_segments(
    points: np.ndarray,
    config: WallDetectionConfig,
    rng: np.random.Generator,
) -> list[_Segment]:
    segments: list[_Segment] = []
    remaining = points
    for iteration in range(config.max_walls):
        if len(remaining) < config.min_inliers:
            break
        fit = fit_line_ransac(
            remaining,
            max_iterations=config.ransac_iterations,
            distance_threshold=config.inlier_tolerance,
            min_inliers=config.min_inliers,
            rng=rng,
        )
        if fit is None:
            break
        normal, offset, mask = fit

        refined_normal, refined_offset = refine_line(remaining[mask])
        refined_mask = (
            line_distances(remaining, refined_normal, refined_offset) < config.inlier_tolerance
        )
        if refined_mask.sum() >= config.min_inliers:
            normal, offset, mask = refined_normal, refined_offset, refined_mask

        found = _split_runs(remaining[mask], normal, offset, config)
        logger.debug(
            "  Line %d: %d inliers → %d segment(s)", iteration, int(mask.sum()), len(found)
        )
        segments.extend(found)
        remaining = remaining[~mask]
    return segments


def _segment_gap(a: _Segment, b: _Segment) -> float:
    """Gap between *a* and *b* measured along *a*'s direction (0 if overlapping)."""
    d = a.direction
    a_lo, a_hi = sorted((0.0, float((a.end - a.start) @ d)))
    b_lo, b_hi = sorted((float((b.start - a.start) @ d), float((b.end - a.start) @ d)))
    return max(0.0, b_lo - a_hi, a_lo - b_hi)


def _are_collinear(a: _Segment, b: _Segment, config: WallDetectionConfig) -> bool:
    if _angle_diff(a.angle, b.angle) > config.merge_angle_deg:
        return False
    offset = max(a.line_distance(b.midpoint), b.line_distance(a.midpoint))
    if offset > config.merge_distance:
        return False
    return _segment_gap(a, b) <= config.merge_gap


def _merge_pair(a: _Segment, b: _Segment) -> _Segment:
    """Span both segments along the better-supported one's line."""
    base = a if a.inliers >= b.inliers else b
    d = base.direction
    ends = [a.start, a.end, b.start, b.end]
    t = [float((p - base.start) @ d) for p in ends]
    total = a.inliers + b.inliers
    return _Segment(
        start=base.start + min(t) * d,
        end=base.start + max(t) * d,
        inliers=total,
        thickness=(a.thickness * a.inliers + b.thickness * b.inliers) / total,
    )


def merge_collinear(segments: list[_Segment], config: WallDetectionConfig) -> list[_Segment]:
    """Repeatedly merge collinear segments separated by small gaps."""
    merged = list(segments)
    changed = True
    while changed:
        changed = False
        result: list[_Segment] = []
        used: set[int] = set()
        for i, current in enumerate(merged):
            if i in used:
                continue
            for j in range(i + 1, len(merged)):
                if j in used:
                    continue
                if _are_collinear(current, merged[j], config):
                    current = _merge_pair(current, merged[j])
                    used.add(j)
                    changed = True
            result.append(current)
        merged = result
    return merged


def snap_perpendicular(segments: list[_Segment], snap_angle_deg: float) -> list[_Segment]:
    """Rotate segments within *snap_angle_deg* of the dominant direction (or
    its perpendicular) onto it, about their midpoints."""
    if not segments or snap_angle_deg <= 0:
        return segments
    dominant = max(segments, key=lambda s: s.inliers).angle

    snapped: list[_Segment] = []
    for seg in segments:
        angle = seg.angle
        for target in (dominant, dominant + 90.0):
            if _angle_diff(angle, target) <= snap_angle_deg:
                angle = target
                break
        rad = math.radians(angle)
        # keep the original start → end orientation
        d = np.array([math.cos(rad), math.sin(rad)])
        if d @ seg.direction < 0:
            d = -d
        half = seg.length / 2.0
        mid = seg.midpoint
        snapped.append(
            _Segment(
                start=mid - half * d,
                end=mid + half * d,
                inliers=seg.inliers,
                thickness=seg.thickness,
            )
        )
    return snapped


def detect_walls(
    cloud: PointCloud,
    z_height: float,
    config: WallDetectionConfig | None = None,
) -> list[DetectedWall]:
    """Detect wall segments on the floor whose surface is at *z_height*.

    The RANSAC generator is seeded from ``config.seed``, so the same cloud
    and configuration always give the same walls.
    """
    config = config or WallDetectionConfig()
    points = slice_points(cloud, z_height, config)
    total = len(points)
    if total < config.min_inliers:
        logger.info("Wall slice at z=%.2f m has %d points; no walls", z_height, total)
        return []

    rng = np.random.default_rng(config.seed)
    segments = _fit_segments(points, config, rng)
    segments = merge_collinear(segments, config)
    segments = snap_perpendicular(segments, config.snap_angle_deg)

    kept = []
    for seg in segments:
        start = np.round(seg.start, 3)
        end = np.round(seg.end, 3)
        length = float(np.linalg.norm(end - start))
        if length >= config.min_segment_length:
            kept.append((seg, start, end, length))

    # confidence compares each wall's share of the slice points with its
    # share of the detected wall length
    total_length = sum(length for *_, length in kept)
    walls: list[DetectedWall] = []
    for seg, start, end, length in kept:
        expected = total * length / total_length
        walls.append(
            DetectedWall(
                start=Point2D(x=float(start[0]), y=float(start[1])),
                end=Point2D(x=float(end[0]), y=float(end[1])),
                thickness=round(seg.thickness, 4),
                length=round(length, 3),
                confidence=round(min(1.0, seg.inliers / expected), 3),
                inlier_count=seg.inliers,
            )
        )

    logger.info(
        "  🧱 Detected %d wall(s) from %d slice points at z=%.2f m", len(walls), total, z_height
    )
    return walls
