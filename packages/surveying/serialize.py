"""Encodings for the decimated viewer copy of a scan.

``SVPC`` is a flat little-endian layout the browser viewer can load straight
into a typed array::

    magic     4 bytes   b"SVPC"
    count     uint32
    colors    uint8     1 if colour data follows the positions
    bounds    6×float32 min x, y, z, max x, y, z
    positions count×3×float32
    colors    count×3×float32 (optional, 0..1)

A binary PLY encoding is also provided for desktop tools.
"""

from __future__ import annotations

import io
import struct

import numpy as np
from plyfile import PlyData, PlyElement

from packages.core.errors import MalformedHeader, TruncatedData
from packages.core.pointcloud import PointCloud
from packages.core.types import BBox, Vec3

MAGIC = b"SVPC"
_HEADER = struct.Struct("<4sIB6f")


def serialize_point_cloud(cloud: PointCloud) -> bytes:
    """Encode *cloud* in the SVPC viewer format."""
    b = cloud.bounds
    has_colors = cloud.colors is not None
    header = _HEADER.pack(
        MAGIC,
        cloud.count,
        1 if has_colors else 0,
        b.min.x, b.min.y, b.min.z,
        b.max.x, b.max.y, b.max.z,
    )
    parts = [header, cloud.positions.astype("<f4").tobytes()]
    if has_colors:
        parts.append(cloud.colors.astype("<f4").tobytes())
    return b"".join(parts)


def deserialize_point_cloud(data: bytes) -> PointCloud:
    """Decode SVPC bytes back into a :class:`PointCloud`."""
    if len(data) < _HEADER.size:
        raise MalformedHeader(f"SVPC buffer of {len(data)} bytes is shorter than its header")
    magic, count, has_colors, *bounds = _HEADER.unpack_from(data, 0)
    if magic != MAGIC:
        raise MalformedHeader(f"bad SVPC magic {magic!r}")

    block = count * 3 * 4
    expected = _HEADER.size + block * (2 if has_colors else 1)
    if len(data) < expected:
        raise TruncatedData(f"SVPC buffer holds {len(data)} bytes, expected {expected}")

    positions = np.frombuffer(data, dtype="<f4", count=count * 3, offset=_HEADER.size)
    colors = None
    if has_colors:
        colors = np.frombuffer(
            data, dtype="<f4", count=count * 3, offset=_HEADER.size + block
        ).reshape(-1, 3).astype(np.float64)

    return PointCloud(
        positions=positions.reshape(-1, 3).astype(np.float64),
        colors=colors,
        bounds=BBox(
            min=Vec3(x=bounds[0], y=bounds[1], z=bounds[2]),
            max=Vec3(x=bounds[3], y=bounds[4], z=bounds[5]),
        ),
    )


def point_cloud_to_ply(cloud: PointCloud) -> bytes:
    """Encode *cloud* as a binary little-endian PLY file."""
    dtype = [("x", "f4"), ("y", "f4"), ("z", "f4")]
    if cloud.colors is not None:
        dtype += [("red", "u1"), ("green", "u1"), ("blue", "u1")]
    if cloud.intensity is not None:
        dtype += [("intensity", "u2")]

    structured = np.empty(cloud.count, dtype=dtype)
    structured["x"] = cloud.positions[:, 0]
    structured["y"] = cloud.positions[:, 1]
    structured["z"] = cloud.positions[:, 2]
    if cloud.colors is not None:
        rgb = np.clip(np.rint(cloud.colors * 255.0), 0, 255).astype(np.uint8)
        structured["red"] = rgb[:, 0]
        structured["green"] = rgb[:, 1]
        structured["blue"] = rgb[:, 2]
    if cloud.intensity is not None:
        structured["intensity"] = cloud.intensity

    el = PlyElement.describe(structured, "vertex")
    buf = io.BytesIO()
    PlyData([el], text=False, byte_order="<").write(buf)
    return buf.getvalue()
