"""Shared test fixtures – synthetic scans of simple buildings."""

from __future__ import annotations

import io
from pathlib import Path
from typing import Callable, Optional

import laspy
import numpy as np
import pye57
import pytest

from packages.core.pointcloud import PointCloud


def make_las_bytes(
    positions: np.ndarray,
    *,
    point_format: int = 0,
    version: str = "1.2",
    intensity: Optional[np.ndarray] = None,
    classification: Optional[np.ndarray] = None,
    rgb: Optional[np.ndarray] = None,
    scale: float = 0.001,
    compress: bool = False,
) -> bytes:
    """Encode *positions* with laspy, independently of the parser under test."""
    header = laspy.LasHeader(point_format=point_format, version=version)
    header.scales = np.full(3, scale)
    header.offsets = np.floor(positions.min(axis=0))
    las = laspy.LasData(header)
    las.x = positions[:, 0]
    las.y = positions[:, 1]
    las.z = positions[:, 2]
    if intensity is not None:
        las.intensity = intensity
    if classification is not None:
        las.classification = classification
    if rgb is not None:
        las.red = rgb[:, 0]
        las.green = rgb[:, 1]
        las.blue = rgb[:, 2]
    buf = io.BytesIO()
    las.write(buf, do_compress=compress)
    return buf.getvalue()


def write_e57(path: Path, points: np.ndarray, colors: Optional[np.ndarray] = None) -> None:
    """Write an (N, 3) array as a single-scan E57 file."""
    e57 = pye57.E57(str(path), mode="w")
    data = {
        "cartesianX": points[:, 0].astype(np.float64),
        "cartesianY": points[:, 1].astype(np.float64),
        "cartesianZ": points[:, 2].astype(np.float64),
    }
    if colors is not None:
        data["colorRed"] = colors[:, 0].astype(np.uint8)
        data["colorGreen"] = colors[:, 1].astype(np.uint8)
        data["colorBlue"] = colors[:, 2].astype(np.uint8)
    e57.write_scan_raw(data)
    e57.close()


def _slab(rng: np.random.Generator, z: float, n: int, size: float = 4.0) -> np.ndarray:
    """*n* points on a horizontal size × size slab at height *z*."""
    xy = rng.uniform(0.0, size, size=(n, 2))
    return np.column_stack([xy, z + rng.normal(scale=0.003, size=n)])


def _walls(
    rng: np.random.Generator,
    z0: float,
    height: float,
    n_per_wall: int,
    size: float = 4.0,
) -> np.ndarray:
    """Four walls of a size × size room standing on *z0*."""
    parts = []
    for axis, coord in [(0, 0.0), (0, size), (1, 0.0), (1, size)]:
        pts = np.empty((n_per_wall, 3))
        pts[:, axis] = coord + rng.normal(scale=0.01, size=n_per_wall)
        pts[:, 1 - axis] = rng.uniform(0.0, size, size=n_per_wall)
        pts[:, 2] = rng.uniform(z0, z0 + height, size=n_per_wall)
        parts.append(pts)
    return np.vstack(parts)


def room_points(seed: int = 7) -> np.ndarray:
    """One 4 m × 4 m room: a dense floor slab at z=0 and four 2.5 m walls."""
    rng = np.random.default_rng(seed)
    return np.vstack([_slab(rng, 0.0, 8000), _walls(rng, 0.0, 2.5, 4000)])


def room_slice_points(noise: int = 200, seed: int = 1) -> np.ndarray:
    """A 4 m × 4 m room cut at the wall slice, with clutter scattered around it."""
    rng = np.random.default_rng(seed)
    walls = _walls(rng, 0.05, 0.1, 400)
    clutter = np.column_stack(
        [rng.uniform(-0.5, 4.5, size=(noise, 2)), rng.uniform(0.05, 0.15, size=noise)]
    )
    return np.vstack([walls, clutter])


@pytest.fixture()
def room_cloud() -> PointCloud:
    return PointCloud(positions=room_points())


@pytest.fixture()
def noisy_room_slice() -> PointCloud:
    return PointCloud(positions=room_slice_points())


@pytest.fixture()
def room_las_bytes() -> bytes:
    return make_las_bytes(room_points())


@pytest.fixture()
def two_story_cloud() -> PointCloud:
    """Floor slabs at z=0 and z=3 with sparse walls running through both stories."""
    rng = np.random.default_rng(3)
    return PointCloud(
        positions=np.vstack(
            [
                _slab(rng, 0.0, 4000),
                _slab(rng, 3.0, 4000),
                _walls(rng, 0.0, 6.0, 500),
            ]
        )
    )


@pytest.fixture()
def las_factory() -> Callable[..., bytes]:
    return make_las_bytes
