"""RANSAC single-line fitting in the plan (XY) view."""

from __future__ import annotations

import numpy as np


def line_distances(points: np.ndarray, normal: np.ndarray, offset: float) -> np.ndarray:
    """Perpendicular distance of every (N, 2) point to the line ``n·p = d``."""
    return np.abs(points @ normal - offset)


def fit_line_ransac(
    points: np.ndarray,
    *,
    max_iterations: int = 200,
    distance_threshold: float = 0.05,
    min_inliers: int = 50,
    rng: np.random.Generator | None = None,
) -> tuple[np.ndarray, float, np.ndarray] | None:
    """Fit a single 2-D line to *points* using RANSAC.

    Returns ``(normal, offset, inlier_mask)`` with a unit *normal*, or
    *None* if no line with enough inliers is found.  The earliest sampled
    candidate wins ties, so a seeded *rng* gives repeatable results.
    """
    rng = rng or np.random.default_rng()
    n = len(points)
    if n < 2:
        return None

    best_inliers: np.ndarray | None = None
    best_count = 0
    best_normal = np.zeros(2)
    best_d = 0.0

    for _ in range(max_iterations):
        idx = rng.choice(n, size=2, replace=False)
        p0, p1 = points[idx]
        direction = p1 - p0
        norm = np.linalg.norm(direction)
        if norm < 1e-9:
            continue
        normal = np.array([-direction[1], direction[0]]) / norm
        d = float(np.dot(normal, p0))

        inlier_mask = line_distances(points, normal, d) < distance_threshold
        count = int(inlier_mask.sum())

        if count > best_count:
            best_count = count
            best_inliers = inlier_mask
            best_normal = normal
            best_d = d

    if best_count < min_inliers or best_inliers is None:
        return None

    return best_normal, best_d, best_inliers


def refine_line(points: np.ndarray) -> tuple[np.ndarray, float]:
    """Least-squares (PCA) line through *points*: ``(unit normal, offset)``."""
    centroid = points.mean(axis=0)
    cov = np.cov((points - centroid).T)
    eigvals, eigvecs = np.linalg.eigh(cov)
    normal = eigvecs[:, 0]  # smallest eigenvalue → across the line
    return normal, float(np.dot(normal, centroid))
