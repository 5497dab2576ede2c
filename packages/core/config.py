"""Tunable parameters for each pipeline stage.

Every threshold the detectors use lives here rather than as a module
constant, so a JSON file (or a test) can move them.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SURVEY_PIPELINE_CONFIG"

DEFAULT_CONFIG_PATHS = [
    Path("/etc/survey-pipeline/config.json"),
    Path("~/.config/survey-pipeline/config.json").expanduser(),
    Path("./survey_pipeline.json"),
]


class ConversionConfig(BaseModel):
    coordinate_scale: float = Field(
        0.001, gt=0, description="Quantization step of converted LAS coordinates (metres)"
    )


class DecimationConfig(BaseModel):
    target_points: int = Field(2_000_000, gt=0)
    ratio: Optional[float] = Field(
        None, gt=0, le=1, description="If set, overrides target_points as a fraction of the input"
    )


class FloorDetectionConfig(BaseModel):
    bin_width: float = Field(0.05, gt=0, description="Histogram bin width (metres)")
    smoothing_sigma: float = Field(1.0, ge=0, description="Gaussian sigma in bins; 0 disables")
    min_peak_ratio: float = Field(4.0, gt=1, description="Peak density / mean density")
    min_separation: float = Field(2.0, ge=0, description="Minimum distance between floors (metres)")
    min_vertical_extent: float = Field(0.5, ge=0)
    min_points: int = Field(100, ge=1)
    confidence_saturation: float = Field(10.0, gt=0)


class WallDetectionConfig(BaseModel):
    slice_offset: float = Field(0.10, description="Slice centre above the floor surface (metres)")
    slice_thickness: float = Field(0.10, gt=0)
    inlier_tolerance: float = Field(0.05, gt=0)
    min_inliers: int = Field(50, ge=2)
    min_segment_length: float = Field(0.5, gt=0)
    ransac_iterations: int = Field(200, ge=1)
    max_walls: int = Field(20, ge=1)
    max_gap: float = Field(0.5, gt=0, description="Split inliers of one line at larger gaps")
    merge_angle_deg: float = Field(5.0, ge=0)
    merge_gap: float = Field(0.3, ge=0)
    merge_distance: float = Field(0.1, ge=0)
    snap_angle_deg: float = Field(5.0, ge=0)
    occupancy_bin: float = Field(0.1, gt=0, description="Bin width along a line for density trimming")
    min_occupancy: float = Field(
        0.25, ge=0, description="Bins below this fraction of the median bin count are dropped"
    )
    min_thickness: float = Field(0.01, gt=0)
    seed: Optional[int] = 0


class PipelineSettings(BaseModel):
    conversion: ConversionConfig = Field(default_factory=ConversionConfig)
    decimation: DecimationConfig = Field(default_factory=DecimationConfig)
    floors: FloorDetectionConfig = Field(default_factory=FloorDetectionConfig)
    walls: WallDetectionConfig = Field(default_factory=WallDetectionConfig)
    max_upload_bytes: int = Field(500 * 1024 * 1024, gt=0)
    max_concurrency: int = Field(2, ge=1)
    stuck_after_seconds: float = Field(3600.0, gt=0)

    @classmethod
    def from_file(cls, path: str | Path) -> "PipelineSettings":
        """Load settings from a JSON file; missing keys keep their defaults."""
        return cls.model_validate_json(Path(path).read_text())

    def save(self, path: str | Path) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(self.model_dump_json(indent=2))


def load_settings(path: str | Path | None = None) -> PipelineSettings:
    """Load settings from *path*, ``$SURVEY_PIPELINE_CONFIG`` or a default location.

    Falls back to built-in defaults when no file is found.
    """
    candidates: list[Path] = []
    if path:
        candidates.append(Path(path))
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path))
    candidates.extend(DEFAULT_CONFIG_PATHS)

    for candidate in candidates:
        if candidate.is_file():
            logger.info("Loading pipeline settings from %s", candidate)
            return PipelineSettings.from_file(candidate)

    return PipelineSettings()
