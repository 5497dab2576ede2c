"""Pydantic models for survey scans and the artefacts derived from them.

A *scan* is one uploaded laser-scan file.  Processing it yields the scan's
metadata (point count, bounds, decimated viewer copy), a list of detected
*floors* and, per floor, a list of detected *walls*.  *Plans* are exported
on demand from one floor's walls.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ── tiny helpers ──────────────────────────────────────────────────────
class Vec3(BaseModel):
    """A 3-component vector (x, y, z) in metres."""

    x: float
    y: float
    z: float


class BBox(BaseModel):
    """Axis-aligned bounding box."""

    min: Vec3
    max: Vec3


class Point2D(BaseModel):
    """A plan-view point (x, y) in metres."""

    x: float
    y: float


# ── scan lifecycle ───────────────────────────────────────────────────
class SourceFormat(str, Enum):
    LAS = "las"
    LAZ = "laz"
    E57 = "e57"

    @property
    def requires_conversion(self) -> bool:
        """True when the file must be turned into plain LAS before parsing."""
        return self is not SourceFormat.LAS


class ScanStatus(str, Enum):
    UPLOADED = "uploaded"
    CONVERTING = "converting"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanStatus.READY, ScanStatus.FAILED)

    def can_transition_to(self, target: "ScanStatus") -> bool:
        return target in _TRANSITIONS[self]


# READY and FAILED can be left only through an explicit re-trigger, which
# restarts the scan at CONVERTING or PROCESSING.
_TRANSITIONS: dict[ScanStatus, frozenset[ScanStatus]] = {
    ScanStatus.UPLOADED: frozenset(
        {ScanStatus.CONVERTING, ScanStatus.PROCESSING, ScanStatus.FAILED}
    ),
    ScanStatus.CONVERTING: frozenset({ScanStatus.PROCESSING, ScanStatus.FAILED}),
    ScanStatus.PROCESSING: frozenset({ScanStatus.READY, ScanStatus.FAILED}),
    ScanStatus.READY: frozenset({ScanStatus.CONVERTING, ScanStatus.PROCESSING}),
    ScanStatus.FAILED: frozenset(
        {ScanStatus.CONVERTING, ScanStatus.PROCESSING, ScanStatus.FAILED}
    ),
}


class Scan(BaseModel):
    """One uploaded scan file and the metadata the pipeline derives from it."""

    id: str = Field(default_factory=_new_id)
    original_filename: str
    scan_name: str = ""
    source_format: SourceFormat
    storage_path: str
    file_size_bytes: int = Field(ge=0)
    converted_storage_path: Optional[str] = None
    decimated_storage_path: Optional[str] = None
    point_count: Optional[int] = None
    decimated_point_count: Optional[int] = None
    bounds: Optional[BBox] = None
    processing_status: ScanStatus = ScanStatus.UPLOADED
    processing_error: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Scan":
        if self.processing_status is ScanStatus.FAILED and not self.processing_error:
            raise ValueError("a failed scan must carry a processing_error")
        if (
            self.point_count is not None
            and self.decimated_point_count is not None
            and self.decimated_point_count > self.point_count
        ):
            raise ValueError("decimated_point_count cannot exceed point_count")
        return self


# ── detection results ────────────────────────────────────────────────
class DetectedFloor(BaseModel):
    """A horizontal story boundary found in the z-histogram."""

    label: str
    z_height: float = Field(description="Height of the floor surface (metres)")
    z_range_min: float
    z_range_max: float
    point_count: int = Field(ge=0)
    confidence: float = Field(ge=0.0, le=1.0)
    sort_order: int = 0


class DetectedWall(BaseModel):
    """A straight wall segment fitted to a horizontal slice."""

    start: Point2D
    end: Point2D
    thickness: float = Field(gt=0, description="Metres")
    length: float = Field(gt=0, description="Metres")
    confidence: float = Field(ge=0.0, le=1.0)
    inlier_count: int = 0

    @model_validator(mode="after")
    def _distinct_endpoints(self) -> "DetectedWall":
        if self.start.x == self.end.x and self.start.y == self.end.y:
            raise ValueError("wall start and end must differ")
        return self


class Floor(DetectedFloor):
    """A persisted floor row."""

    id: str = Field(default_factory=_new_id)
    scan_id: str


class Wall(BaseModel):
    """A persisted wall row."""

    id: str = Field(default_factory=_new_id)
    floor_id: str
    label: str
    start: Point2D
    end: Point2D
    thickness: float = Field(gt=0)
    length: float = Field(gt=0)
    confidence: float = Field(ge=0.0, le=1.0)

    @classmethod
    def from_detection(cls, floor_id: str, label: str, wall: DetectedWall) -> "Wall":
        return cls(
            floor_id=floor_id,
            label=label,
            start=wall.start,
            end=wall.end,
            thickness=wall.thickness,
            length=wall.length,
            confidence=wall.confidence,
        )


# ── plans ────────────────────────────────────────────────────────────
class PlanFormat(str, Enum):
    PDF = "pdf"
    DXF = "dxf"

    @property
    def content_type(self) -> str:
        return "application/pdf" if self is PlanFormat.PDF else "application/dxf"


class PaperSize(str, Enum):
    A1 = "A1"
    A3 = "A3"
    A4 = "A4"


class Plan(BaseModel):
    """An exported drawing of one floor.  Never updated after creation."""

    id: str = Field(default_factory=_new_id)
    floor_id: str
    reference: str
    format: PlanFormat
    paper_size: PaperSize
    scale: str
    storage_path: str
    file_size_bytes: int = Field(ge=0)
    generated_by: str
    created_at: datetime = Field(default_factory=_now)


# ── bookkeeping ──────────────────────────────────────────────────────
class AuditEntry(BaseModel):
    scan_id: str
    outcome: ScanStatus
    detail: str = ""
    created_at: datetime = Field(default_factory=_now)


class FloorDetections(BaseModel):
    floor: DetectedFloor
    walls: list[DetectedWall] = Field(default_factory=list)


class ScanSummary(BaseModel):
    """Everything detected in one local file, as written by the CLI."""

    source_file: str
    source_format: SourceFormat
    point_count: int
    decimated_point_count: int
    bounds: BBox
    floors: list[FloorDetections] = Field(default_factory=list)


class ProcessingResult(BaseModel):
    """Outcome of one orchestrator run."""

    scan_id: str
    status: ScanStatus
    point_count: int = 0
    decimated_point_count: int = 0
    floors_detected: int = 0
    walls_detected: int = 0
    error: Optional[str] = None
