"""Story detection from the vertical distribution of points.

Floor slabs and ceilings put far more points into a thin height band than
walls or clutter do, so they show up as sharp peaks in a z-histogram.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy.ndimage import gaussian_filter1d

from packages.core.config import FloorDetectionConfig
from packages.core.pointcloud import PointCloud
from packages.core.types import DetectedFloor

logger = logging.getLogger(__name__)


def floor_label(index: int) -> str:
    """Label of the *index*-th floor counted upwards from the lowest."""
    return "Ground Floor" if index == 0 else f"Level {index}"


def z_histogram(z: np.ndarray, bin_width: float) -> tuple[np.ndarray, float]:
    """Point counts per *bin_width* slice, starting at ``z.min()``.

    Returns ``(counts, z_min)``.
    """
    z_min = float(z.min())
    n_bins = int((float(z.max()) - z_min) // bin_width) + 1
    idx = np.minimum(((z - z_min) / bin_width).astype(np.int64), n_bins - 1)
    return np.bincount(idx, minlength=n_bins).astype(np.float64), z_min


def _local_maxima(values: np.ndarray, threshold: float) -> list[int]:
    padded = np.concatenate(([-np.inf], values, [-np.inf]))
    centre = padded[1:-1]
    mask = (centre >= padded[:-2]) & (centre >= padded[2:]) & (centre >= threshold)
    return np.flatnonzero(mask).tolist()


def detect_floors(
    cloud: PointCloud,
    config: FloorDetectionConfig | None = None,
) -> list[DetectedFloor]:
    """Find horizontal story boundaries, ordered by height.

    1. Histogram z with ``bin_width`` bins and smooth it.
    2. Keep local maxima at least ``min_peak_ratio`` times the mean bin
       density.
    3. Strongest peak first, grow a band out to half its maximum without
       entering a band already claimed; drop peaks closer than
       ``min_separation`` to an accepted floor.
    4. Height is the count-weighted centroid of the band, the z-range is
       the band itself, and confidence grows with peak / mean density.

    A cloud without such peaks yields an empty list.
    """
    config = config or FloorDetectionConfig()
    if cloud.count < config.min_points:
        logger.info("Floor detection skipped: only %d points", cloud.count)
        return []

    z = cloud.z
    extent = float(z.max() - z.min())
    if extent < config.min_vertical_extent:
        logger.info("Floor detection skipped: vertical extent %.2f m too small", extent)
        return []

    bw = config.bin_width
    hist, z_min = z_histogram(z, bw)
    if config.smoothing_sigma > 0:
        smoothed = gaussian_filter1d(hist, config.smoothing_sigma, mode="constant")
    else:
        smoothed = hist
    mean_density = hist.sum() / len(hist)
    peaks = _local_maxima(smoothed, config.min_peak_ratio * mean_density)
    peaks.sort(key=lambda i: (-smoothed[i], i))

    claimed = np.zeros(len(hist), dtype=bool)
    accepted: list[tuple[float, DetectedFloor]] = []
    for peak in peaks:
        if claimed[peak]:
            continue
        peak_z = z_min + (peak + 0.5) * bw
        if any(abs(peak_z - pz) < config.min_separation for pz, _ in accepted):
            continue

        half = smoothed[peak] / 2.0
        lo = peak
        while lo > 0 and not claimed[lo - 1] and smoothed[lo - 1] >= half:
            lo -= 1
        hi = peak
        while hi < len(hist) - 1 and not claimed[hi + 1] and smoothed[hi + 1] >= half:
            hi += 1

        band = hist[lo : hi + 1]
        support = int(band.sum())
        if support == 0:
            continue
        claimed[lo : hi + 1] = True

        centres = z_min + (np.arange(lo, hi + 1) + 0.5) * bw
        ratio = smoothed[peak] / mean_density
        accepted.append(
            (
                peak_z,
                DetectedFloor(
                    label="",
                    z_height=round(float(np.average(centres, weights=band)), 3),
                    z_range_min=round(z_min + lo * bw, 3),
                    z_range_max=round(z_min + (hi + 1) * bw, 3),
                    point_count=support,
                    confidence=round(min(1.0, ratio / config.confidence_saturation), 3),
                ),
            )
        )

    floors = sorted((f for _, f in accepted), key=lambda f: f.z_height)
    for order, floor in enumerate(floors):
        floor.label = floor_label(order)
        floor.sort_order = order

    logger.info(
        "  🏢 Detected %d floor(s) at %s",
        len(floors), ", ".join(f"{f.z_height:.2f} m" for f in floors) or "-",
    )
    return floors
