"""Decode uncompressed LAS point-cloud files into a :class:`PointCloud`.

Supported versions are LAS 1.0 – 1.4 with point data record formats 0 – 10.
Waveform packets, GPS time and extra bytes are skipped; coordinates,
intensity, classification and RGB are decoded.

The input is treated as untrusted: every offset and length taken from the
header is checked against the buffer before it is used.
"""

from __future__ import annotations

import logging
import math
import struct
from dataclasses import dataclass

import numpy as np

from packages.core.errors import MalformedHeader, TruncatedData
from packages.core.pointcloud import PointCloud

logger = logging.getLogger(__name__)

SIGNATURE = b"LASF"
BASE_HEADER_SIZE = 227  # LAS 1.0 – 1.2 public header block
LAS14_HEADER_SIZE = 375

_COMPRESSED_BIT = 0x80

# point format id -> (minimum record length, {field: (dtype, offset)})
_XYZ = {"X": ("<i4", 0), "Y": ("<i4", 4), "Z": ("<i4", 8), "intensity": ("<u2", 12)}
_LEGACY = {**_XYZ, "classification": ("u1", 15)}
_EXTENDED = {**_XYZ, "classification": ("u1", 16)}
_RGB_LEGACY_1 = {"red": ("<u2", 20), "green": ("<u2", 22), "blue": ("<u2", 24)}
_RGB_LEGACY_2 = {"red": ("<u2", 28), "green": ("<u2", 30), "blue": ("<u2", 32)}
_RGB_EXTENDED = {"red": ("<u2", 30), "green": ("<u2", 32), "blue": ("<u2", 34)}

POINT_FORMATS: dict[int, tuple[int, dict[str, tuple[str, int]]]] = {
    0: (20, _LEGACY),
    1: (28, _LEGACY),
    2: (26, {**_LEGACY, **_RGB_LEGACY_1}),
    3: (34, {**_LEGACY, **_RGB_LEGACY_2}),
    4: (57, _LEGACY),
    5: (63, {**_LEGACY, **_RGB_LEGACY_2}),
    6: (30, _EXTENDED),
    7: (36, {**_EXTENDED, **_RGB_EXTENDED}),
    8: (38, {**_EXTENDED, **_RGB_EXTENDED}),
    9: (59, _EXTENDED),
    10: (67, {**_EXTENDED, **_RGB_EXTENDED}),
}


@dataclass(frozen=True)
class LasHeader:
    """The fields of the public header block the decoder relies on."""

    version_major: int
    version_minor: int
    header_size: int
    point_data_offset: int
    point_format: int
    record_length: int
    point_count: int
    scale: tuple[float, float, float]
    offset: tuple[float, float, float]

    @property
    def version(self) -> str:
        return f"{self.version_major}.{self.version_minor}"

    @property
    def has_color(self) -> bool:
        return "red" in POINT_FORMATS[self.point_format][1]

    @property
    def uses_extended_classification(self) -> bool:
        return self.point_format >= 6


def read_header(buffer: bytes | bytearray | memoryview) -> LasHeader:
    """Parse and validate the public header block of *buffer*.

    Raises :class:`MalformedHeader` if a required field is missing or
    inconsistent with the buffer length.
    """
    size = len(buffer)
    if size < BASE_HEADER_SIZE:
        raise MalformedHeader(
            f"file is {size} bytes, shorter than the {BASE_HEADER_SIZE}-byte LAS header"
        )
    if bytes(buffer[0:4]) != SIGNATURE:
        raise MalformedHeader(f"bad file signature {bytes(buffer[0:4])!r}, expected {SIGNATURE!r}")

    version_major, version_minor = struct.unpack_from("<BB", buffer, 24)
    header_size, point_data_offset = struct.unpack_from("<HI", buffer, 94)
    format_id, record_length, legacy_count = struct.unpack_from("<BHI", buffer, 104)
    scale = struct.unpack_from("<3d", buffer, 131)
    offset = struct.unpack_from("<3d", buffer, 155)

    if version_major != 1:
        raise MalformedHeader(f"unsupported LAS version {version_major}.{version_minor}")
    if header_size < BASE_HEADER_SIZE or header_size > size:
        raise MalformedHeader(f"header size {header_size} is outside 227..{size}")
    if point_data_offset < header_size or point_data_offset > size:
        raise MalformedHeader(
            f"point data offset {point_data_offset} is outside {header_size}..{size}"
        )
    if format_id & _COMPRESSED_BIT:
        raise MalformedHeader("point data is LAZ-compressed; convert it to LAS first")
    if format_id not in POINT_FORMATS:
        raise MalformedHeader(f"unsupported point data format {format_id}")
    min_length = POINT_FORMATS[format_id][0]
    if record_length < min_length:
        raise MalformedHeader(
            f"record length {record_length} is shorter than the {min_length} bytes "
            f"required by point format {format_id}"
        )
    if not all(math.isfinite(s) and s != 0.0 for s in scale):
        raise MalformedHeader(f"invalid coordinate scale factors {scale}")
    if not all(math.isfinite(o) for o in offset):
        raise MalformedHeader(f"invalid coordinate offsets {offset}")

    point_count = legacy_count
    if version_minor >= 4:
        if header_size < LAS14_HEADER_SIZE:
            raise MalformedHeader(
                f"LAS 1.4 header must be at least {LAS14_HEADER_SIZE} bytes, got {header_size}"
            )
        (extended_count,) = struct.unpack_from("<Q", buffer, 247)
        if extended_count:
            point_count = extended_count

    return LasHeader(
        version_major=version_major,
        version_minor=version_minor,
        header_size=header_size,
        point_data_offset=point_data_offset,
        point_format=format_id,
        record_length=record_length,
        point_count=point_count,
        scale=tuple(scale),
        offset=tuple(offset),
    )


def _record_dtype(header: LasHeader) -> np.dtype:
    fields = POINT_FORMATS[header.point_format][1]
    names = list(fields)
    return np.dtype(
        {
            "names": names,
            "formats": [fields[n][0] for n in names],
            "offsets": [fields[n][1] for n in names],
            "itemsize": header.record_length,
        }
    )


def _normalise_colors(records: np.ndarray) -> np.ndarray:
    rgb = np.column_stack(
        (records["red"], records["green"], records["blue"])
    ).astype(np.float64)
    # Many writers store 8-bit values in the 16-bit fields.
    peak = rgb.max() if len(rgb) else 0.0
    return rgb / (65535.0 if peak > 255 else 255.0)


def parse_las(
    buffer: bytes | bytearray | memoryview,
    declared_size: int | None = None,
) -> PointCloud:
    """Decode a LAS file held in memory.

    Parameters
    ----------
    buffer : bytes-like
        The complete file contents.
    declared_size : int, optional
        File size recorded at upload time.  A buffer shorter than this is
        reported as :class:`TruncatedData`.

    Returns
    -------
    PointCloud
        ``count`` equals the header's point count and every coordinate is
        ``raw * scale + offset``.
    """
    if declared_size is not None:
        if declared_size > len(buffer):
            raise TruncatedData(
                f"received {len(buffer)} bytes but the upload declared {declared_size}"
            )
        buffer = memoryview(buffer)[:declared_size]

    header = read_header(buffer)
    available = (len(buffer) - header.point_data_offset) // header.record_length
    if available < header.point_count:
        raise TruncatedData(
            f"header declares {header.point_count} points but only {available} complete "
            f"{header.record_length}-byte records follow offset {header.point_data_offset}"
        )
    if header.point_count == 0:
        logger.info("LAS %s file holds no points", header.version)
        return PointCloud(positions=np.empty((0, 3)))

    records = np.frombuffer(
        buffer,
        dtype=_record_dtype(header),
        count=header.point_count,
        offset=header.point_data_offset,
    )

    scale = np.asarray(header.scale, dtype=np.float64)
    offset = np.asarray(header.offset, dtype=np.float64)
    raw = np.column_stack((records["X"], records["Y"], records["Z"])).astype(np.float64)
    positions = raw * scale + offset

    classification = records["classification"].astype(np.uint8)
    if not header.uses_extended_classification:
        classification = classification & 0x1F

    colors = _normalise_colors(records) if header.has_color else None

    cloud = PointCloud(
        positions=positions,
        intensity=records["intensity"].astype(np.uint16),
        classification=classification,
        colors=colors,
    )
    logger.info(
        "  ✅ Parsed LAS %s (format %d): %d points",
        header.version, header.point_format, cloud.count,
    )
    return cloud
