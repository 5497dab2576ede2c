"""End-to-end pipeline: raw scan file → floors, walls and a viewer copy."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Optional

from packages.core.config import PipelineSettings
from packages.core.errors import InvalidTransition, describe
from packages.core.pointcloud import PointCloud
from packages.core.types import (
    AuditEntry,
    DetectedFloor,
    DetectedWall,
    FloorDetections,
    ProcessingResult,
    Scan,
    ScanStatus,
    ScanSummary,
)
from packages.surveying.convert import convert_to_las
from packages.surveying.decimate import decimate
from packages.surveying.floors import detect_floors
from packages.surveying.ingest import source_format_for
from packages.surveying.las import parse_las
from packages.surveying.serialize import serialize_point_cloud
from packages.surveying.storage import ObjectStore
from packages.surveying.store import MetadataStore
from packages.surveying.walls import detect_walls

logger = logging.getLogger(__name__)


@dataclass
class CloudAnalysis:
    decimated: PointCloud
    detections: list[tuple[DetectedFloor, list[DetectedWall]]]

    @property
    def wall_count(self) -> int:
        return sum(len(walls) for _, walls in self.detections)


def analyse_cloud(cloud: PointCloud, settings: PipelineSettings) -> CloudAnalysis:
    """Decimate *cloud*, find its floors and the walls on each floor.

    Detection runs on the full-resolution cloud; the decimated copy is only
    for the viewer.
    """
    logger.info("Decimating %d points …", cloud.count)
    decimated = decimate(
        cloud,
        settings.decimation.target_points,
        ratio=settings.decimation.ratio,
    )

    logger.info("Detecting floors …")
    floors = detect_floors(cloud, settings.floors)

    detections: list[tuple[DetectedFloor, list[DetectedWall]]] = []
    for floor in floors:
        logger.info("Detecting walls on %s (z=%.2f m) …", floor.label, floor.z_height)
        detections.append((floor, detect_walls(cloud, floor.z_height, settings.walls)))
    return CloudAnalysis(decimated=decimated, detections=detections)


def artifact_path(scan: Scan, suffix: str) -> str:
    return f"scans/{scan.id}/{PurePath(scan.original_filename).stem}{suffix}"


class ScanProcessor:
    """Runs one scan through conversion, parsing, decimation and detection.

    The whole run is one unit of work: any error marks the scan ``failed``
    with the cause and leaves no floor or wall rows behind.  Running the
    same scan again replaces its earlier detections.
    """

    def __init__(
        self,
        store: MetadataStore,
        objects: ObjectStore,
        settings: Optional[PipelineSettings] = None,
    ) -> None:
        self.store = store
        self.objects = objects
        self.settings = settings or PipelineSettings()

    def process(self, scan_id: str) -> ProcessingResult:
        scan = self.store.get_scan(scan_id)
        first = (
            ScanStatus.CONVERTING
            if scan.source_format.requires_conversion
            else ScanStatus.PROCESSING
        )
        try:
            scan = self.store.set_status(scan_id, first)
        except InvalidTransition as e:
            # already in flight elsewhere; leave that run alone
            logger.warning("Not starting scan %s: %s", scan_id, e)
            return ProcessingResult(
                scan_id=scan_id, status=scan.processing_status, error=str(e)
            )

        logger.info("Processing scan %s (%s)", scan_id, scan.original_filename)
        try:
            result = self._run(scan)
        except Exception as exc:
            message = describe(exc)
            logger.exception("Processing scan %s failed", scan_id)
            self.store.mark_failed(scan_id, message)
            self.store.record_audit(
                AuditEntry(scan_id=scan_id, outcome=ScanStatus.FAILED, detail=message)
            )
            return ProcessingResult(scan_id=scan_id, status=ScanStatus.FAILED, error=message)

        self.store.record_audit(
            AuditEntry(
                scan_id=scan_id,
                outcome=ScanStatus.READY,
                detail=(
                    f"{result.point_count} points, {result.floors_detected} floor(s), "
                    f"{result.walls_detected} wall(s)"
                ),
            )
        )
        logger.info(
            "Scan %s ready: %d floor(s), %d wall(s)",
            scan_id, result.floors_detected, result.walls_detected,
        )
        return result

    def _run(self, scan: Scan) -> ProcessingResult:
        raw = self.objects.get(scan.storage_path)

        if scan.source_format.requires_conversion:
            las_bytes = convert_to_las(raw, scan.source_format, self.settings.conversion)
            converted_path = artifact_path(scan, ".las")
            self.objects.put(converted_path, las_bytes)
            self.store.update_scan(scan.id, converted_storage_path=converted_path)
            self.store.set_status(scan.id, ScanStatus.PROCESSING)
            declared_size = len(las_bytes)
        else:
            las_bytes = raw
            declared_size = scan.file_size_bytes

        cloud = parse_las(las_bytes, declared_size=declared_size)
        analysis = analyse_cloud(cloud, self.settings)

        decimated_path = artifact_path(scan, ".svpc")
        self.objects.put(decimated_path, serialize_point_cloud(analysis.decimated))
        self.store.update_scan(
            scan.id,
            point_count=cloud.count,
            bounds=cloud.bounds,
            decimated_storage_path=decimated_path,
            decimated_point_count=analysis.decimated.count,
        )

        self.store.replace_detections(scan.id, analysis.detections)
        self.store.set_status(scan.id, ScanStatus.READY)

        return ProcessingResult(
            scan_id=scan.id,
            status=ScanStatus.READY,
            point_count=cloud.count,
            decimated_point_count=analysis.decimated.count,
            floors_detected=len(analysis.detections),
            walls_detected=analysis.wall_count,
        )


def process_file(
    input_path: str | Path,
    settings: Optional[PipelineSettings] = None,
) -> tuple[ScanSummary, PointCloud]:
    """Run the pipeline on a local file without any store.

    Returns the detection summary and the decimated cloud.
    """
    settings = settings or PipelineSettings()
    input_path = Path(input_path)
    source_format = source_format_for(input_path.name)

    logger.info("Loading %s …", input_path.name)
    data = input_path.read_bytes()
    if source_format.requires_conversion:
        data = convert_to_las(data, source_format, settings.conversion)
    cloud = parse_las(data, declared_size=len(data))
    analysis = analyse_cloud(cloud, settings)

    summary = ScanSummary(
        source_file=input_path.name,
        source_format=source_format,
        point_count=cloud.count,
        decimated_point_count=analysis.decimated.count,
        bounds=cloud.bounds,
        floors=[FloorDetections(floor=f, walls=w) for f, w in analysis.detections],
    )
    return summary, analysis.decimated
