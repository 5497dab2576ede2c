"""Upload validation and registration of new scans."""

from __future__ import annotations

import logging
from pathlib import PurePath
from typing import Optional

from packages.core.config import PipelineSettings
from packages.core.errors import FileTooLarge, UnsupportedFormat
from packages.core.types import Scan, SourceFormat
from packages.surveying.storage import ObjectStore
from packages.surveying.store import MetadataStore

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = tuple(f".{fmt.value}" for fmt in SourceFormat)


def source_format_for(filename: str) -> SourceFormat:
    suffix = PurePath(filename).suffix.lower()
    if suffix not in ALLOWED_EXTENSIONS:
        raise UnsupportedFormat(
            f"unsupported file type {suffix or '(none)'!r}; expected one of {', '.join(ALLOWED_EXTENSIONS)}"
        )
    return SourceFormat(suffix[1:])


def raw_object_path(scan_id: str, source_format: SourceFormat) -> str:
    return f"scans/{scan_id}/raw.{source_format.value}"


def check_upload(filename: str, size: int, settings: PipelineSettings) -> SourceFormat:
    """Reject an upload by name and size before any of its bytes are stored."""
    source_format = source_format_for(filename)
    if size > settings.max_upload_bytes:
        raise FileTooLarge(
            f"{filename} is {size} bytes; the limit is {settings.max_upload_bytes}"
        )
    return source_format


def register_upload(
    filename: str,
    data: bytes,
    store: MetadataStore,
    objects: ObjectStore,
    settings: PipelineSettings,
    scan_name: Optional[str] = None,
) -> Scan:
    """Validate an uploaded file, store its bytes and create an ``uploaded`` scan."""
    source_format = check_upload(filename, len(data), settings)

    scan = Scan(
        original_filename=filename,
        scan_name=scan_name or PurePath(filename).stem,
        source_format=source_format,
        storage_path="",
        file_size_bytes=len(data),
    )
    scan.storage_path = raw_object_path(scan.id, source_format)
    objects.put(scan.storage_path, data)
    store.create_scan(scan)
    logger.info(
        "Registered scan %s (%s, %d bytes) from %s",
        scan.id, source_format.value, len(data), filename,
    )
    return scan
