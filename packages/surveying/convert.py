"""Turn container formats the parser cannot read into plain LAS bytes.

Supported sources
-----------------
* **E57** – via the ``pye57`` library (ASTM E2807, used by BLK360, RTC360 …).
  Every ``Data3D`` scan is read, its pose applied, and the scans are
  concatenated into one LAS point set.
* **LAZ** – via ``laspy`` with the ``lazrs`` backend; decompressed and
  re-emitted uncompressed.

The output is a LAS 1.2 file (point format 0, or 2 when colour is present)
quantised to ``ConversionConfig.coordinate_scale``.
"""

from __future__ import annotations

import io
import logging
import tempfile
from pathlib import Path
from typing import Optional

import laspy
import numpy as np
import pye57
from laspy.errors import LaspyException

from packages.core.config import ConversionConfig
from packages.core.errors import UnsupportedContainerVariant
from packages.core.types import SourceFormat

logger = logging.getLogger(__name__)

_CARTESIAN = ("cartesianX", "cartesianY", "cartesianZ")
_SPHERICAL = ("sphericalRange", "sphericalAzimuth", "sphericalElevation")
_COLOR = ("colorRed", "colorGreen", "colorBlue")


def _scan_positions(raw: dict, index: int) -> np.ndarray:
    """Return (N, 3) scanner-frame coordinates from a raw E57 scan."""
    if all(k in raw for k in _CARTESIAN):
        return np.column_stack([np.asarray(raw[k], dtype=np.float64) for k in _CARTESIAN])
    if all(k in raw for k in _SPHERICAL):
        r, azimuth, elevation = (np.asarray(raw[k], dtype=np.float64) for k in _SPHERICAL)
        return np.column_stack(
            (
                r * np.cos(elevation) * np.cos(azimuth),
                r * np.cos(elevation) * np.sin(azimuth),
                r * np.sin(elevation),
            )
        )
    raise UnsupportedContainerVariant(
        f"E57 scan {index} has neither cartesian nor spherical coordinates "
        f"(fields: {sorted(raw)})"
    )


def _to_uint16(values: np.ndarray) -> np.ndarray:
    """Rescale an attribute to the full uint16 range used by LAS."""
    values = np.asarray(values, dtype=np.float64)
    if len(values) == 0:
        return values.astype(np.uint16)
    lo, hi = float(values.min()), float(values.max())
    if lo >= 0 and hi <= 1.0:
        scaled = values * 65535.0
    elif lo >= 0 and hi <= 255:
        scaled = values * 257.0
    elif lo >= 0 and hi <= 65535:
        scaled = values
    else:
        span = hi - lo or 1.0
        scaled = (values - lo) / span * 65535.0
    return np.clip(np.rint(scaled), 0, 65535).astype(np.uint16)


def read_e57(buffer: bytes) -> dict:
    """Read every scan in an E57 container held in memory.

    Returns a dict with 'positions' (N, 3) float64 in the container's
    global frame, 'intensity' (N,) uint16 or None, and 'colors' (N, 3)
    uint16 or None.
    """
    # pye57 only opens files from disk.
    with tempfile.NamedTemporaryFile(suffix=".e57", delete=False) as tmp:
        tmp.write(buffer)
        tmp_path = Path(tmp.name)

    try:
        try:
            e57 = pye57.E57(str(tmp_path))
        except Exception as exc:
            raise UnsupportedContainerVariant(f"unreadable E57 container: {exc}") from exc

        try:
            if e57.scan_count == 0:
                raise UnsupportedContainerVariant("E57 container holds no scans")

            positions, intensities, colors = [], [], []
            for index in range(e57.scan_count):
                header = e57.get_header(index)
                raw = e57.read_scan_raw(index)
                local = _scan_positions(raw, index)
                # pose: global = R · local + t
                rotation = np.asarray(header.rotation_matrix, dtype=np.float64)
                translation = np.asarray(header.translation, dtype=np.float64)
                positions.append(local @ rotation.T + translation)
                intensities.append(raw.get("intensity"))
                if all(k in raw for k in _COLOR):
                    colors.append(np.column_stack([raw[k] for k in _COLOR]))
                else:
                    colors.append(None)
                logger.info("E57 scan %d: %d points", index, len(local))
        finally:
            e57.close()
    finally:
        tmp_path.unlink(missing_ok=True)

    # Attributes are only kept when every scan carries them.
    intensity = None
    if all(i is not None for i in intensities):
        intensity = _to_uint16(np.concatenate([np.asarray(i) for i in intensities]))
    rgb = None
    if all(c is not None for c in colors):
        stacked = np.vstack(colors)
        rgb = np.column_stack([_to_uint16(stacked[:, k]) for k in range(3)])

    return {"positions": np.vstack(positions), "intensity": intensity, "colors": rgb}


def write_las(
    positions: np.ndarray,
    *,
    intensity: Optional[np.ndarray] = None,
    colors: Optional[np.ndarray] = None,
    coordinate_scale: float = 0.001,
) -> bytes:
    """Encode points as an uncompressed LAS 1.2 file."""
    header = laspy.LasHeader(point_format=2 if colors is not None else 0, version="1.2")
    header.scales = np.full(3, coordinate_scale)
    header.offsets = np.floor(positions.min(axis=0)) if len(positions) else np.zeros(3)

    las = laspy.LasData(header)
    las.x = positions[:, 0]
    las.y = positions[:, 1]
    las.z = positions[:, 2]
    if intensity is not None:
        las.intensity = intensity
    if colors is not None:
        las.red = colors[:, 0]
        las.green = colors[:, 1]
        las.blue = colors[:, 2]

    out = io.BytesIO()
    las.write(out, do_compress=False)
    return out.getvalue()


def decompress_laz(buffer: bytes) -> bytes:
    """Decompress a LAZ file into the equivalent LAS bytes."""
    try:
        las = laspy.read(io.BytesIO(buffer))
    except LaspyException as exc:
        raise UnsupportedContainerVariant(f"unreadable LAZ file: {exc}") from exc
    out = io.BytesIO()
    las.write(out, do_compress=False)
    logger.info("  🔄 Decompressed LAZ: %d points", len(las.points))
    return out.getvalue()


def convert_to_las(
    buffer: bytes,
    source_format: SourceFormat | str,
    config: ConversionConfig | None = None,
) -> bytes:
    """Convert *buffer* from *source_format* into LAS bytes for the parser."""
    config = config or ConversionConfig()
    try:
        source_format = SourceFormat(source_format)
    except ValueError as exc:
        raise UnsupportedContainerVariant(f"unknown source format {source_format!r}") from exc

    if source_format is SourceFormat.LAZ:
        return decompress_laz(buffer)
    if source_format is SourceFormat.E57:
        data = read_e57(buffer)
        las_bytes = write_las(
            data["positions"],
            intensity=data["intensity"],
            colors=data["colors"],
            coordinate_scale=config.coordinate_scale,
        )
        logger.info(
            "  🔄 Converted E57 → LAS: %d points, %d bytes", len(data["positions"]), len(las_bytes)
        )
        return las_bytes
    raise UnsupportedContainerVariant(f"no conversion rule for {source_format.value} files")
