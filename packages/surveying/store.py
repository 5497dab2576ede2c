"""Metadata persistence for scans, detections, plans and the audit trail.

``MetadataStore`` is what the processor, dispatcher and API talk to.
``InMemoryMetadataStore`` keeps everything in dicts behind one lock;
``packages.surveying.sql_store.SqlMetadataStore`` is the database-backed
implementation.  Both hand out copies, so callers never mutate stored rows.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol, Sequence

from packages.core.errors import InvalidTransition, NotFound
from packages.core.types import (
    AuditEntry,
    DetectedFloor,
    DetectedWall,
    Floor,
    Plan,
    Scan,
    ScanStatus,
    Wall,
)

logger = logging.getLogger(__name__)

PLAN_REFERENCE_PREFIX = "PLN"

Detections = Sequence[tuple[DetectedFloor, Sequence[DetectedWall]]]


def plan_reference(number: int) -> str:
    return f"{PLAN_REFERENCE_PREFIX}-{number:04d}"


def wall_label(index: int) -> str:
    return f"W{index + 1:02d}"


def check_transition(scan: Scan, status: ScanStatus) -> None:
    if not scan.processing_status.can_transition_to(status):
        raise InvalidTransition(
            f"scan {scan.id}: {scan.processing_status.value} → {status.value} is not allowed"
        )


def build_rows(scan_id: str, detections: Detections) -> list[tuple[Floor, list[Wall]]]:
    """Persistable floor and wall rows for one scan's detections."""
    rows: list[tuple[Floor, list[Wall]]] = []
    for detected, walls in detections:
        floor = Floor(scan_id=scan_id, **detected.model_dump())
        rows.append(
            (floor, [Wall.from_detection(floor.id, wall_label(i), w) for i, w in enumerate(walls)])
        )
    return rows


class MetadataStore(Protocol):
    def create_scan(self, scan: Scan) -> Scan: ...

    def get_scan(self, scan_id: str) -> Scan: ...

    def update_scan(self, scan_id: str, **fields) -> Scan: ...

    def set_status(self, scan_id: str, status: ScanStatus) -> Scan: ...

    def list_scans(
        self,
        statuses: Optional[Iterable[ScanStatus]] = None,
        updated_before: Optional[datetime] = None,
    ) -> list[Scan]: ...

    def replace_detections(self, scan_id: str, detections: Detections) -> list[Floor]: ...

    def mark_failed(self, scan_id: str, message: str) -> Scan: ...

    def list_floors(self, scan_id: str) -> list[Floor]: ...

    def get_floor(self, floor_id: str) -> Floor: ...

    def list_walls(self, floor_id: str) -> list[Wall]: ...

    def next_plan_reference(self) -> str: ...

    def add_plan(self, plan: Plan) -> Plan: ...

    def get_plan(self, plan_id: str) -> Plan: ...

    def list_plans(self, floor_id: Optional[str] = None) -> list[Plan]: ...

    def record_audit(self, entry: AuditEntry) -> None: ...

    def list_audit(self, scan_id: str) -> list[AuditEntry]: ...


class InMemoryMetadataStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._scans: dict[str, Scan] = {}
        self._floors: dict[str, Floor] = {}
        self._walls: dict[str, list[Wall]] = {}
        self._plans: dict[str, Plan] = {}
        self._audit: list[AuditEntry] = []
        self._plan_counter = 0

    # ── scans ───────────────────────────────────────────────────────
    def create_scan(self, scan: Scan) -> Scan:
        with self._lock:
            self._scans[scan.id] = scan.model_copy(deep=True)
            return scan.model_copy(deep=True)

    def _scan(self, scan_id: str) -> Scan:
        try:
            return self._scans[scan_id]
        except KeyError:
            raise NotFound(f"scan {scan_id} not found") from None

    def get_scan(self, scan_id: str) -> Scan:
        with self._lock:
            return self._scan(scan_id).model_copy(deep=True)

    def _write_scan(self, scan_id: str, fields: dict) -> Scan:
        current = self._scan(scan_id)
        data = current.model_dump()
        data.update(fields)
        data["updated_at"] = datetime.now(timezone.utc)
        updated = Scan.model_validate(data)
        self._scans[scan_id] = updated
        return updated.model_copy(deep=True)

    def update_scan(self, scan_id: str, **fields) -> Scan:
        with self._lock:
            return self._write_scan(scan_id, fields)

    def set_status(self, scan_id: str, status: ScanStatus) -> Scan:
        if status is ScanStatus.FAILED:
            raise ValueError("use mark_failed() to fail a scan")
        with self._lock:
            check_transition(self._scan(scan_id), status)
            return self._write_scan(
                scan_id, {"processing_status": status, "processing_error": None}
            )

    def list_scans(
        self,
        statuses: Optional[Iterable[ScanStatus]] = None,
        updated_before: Optional[datetime] = None,
    ) -> list[Scan]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            scans = [
                s.model_copy(deep=True)
                for s in self._scans.values()
                if (wanted is None or s.processing_status in wanted)
                and (updated_before is None or s.updated_at < updated_before)
            ]
        return sorted(scans, key=lambda s: s.created_at)

    # ── detections ──────────────────────────────────────────────────
    def _clear_detections(self, scan_id: str) -> None:
        for floor_id in [f.id for f in self._floors.values() if f.scan_id == scan_id]:
            del self._floors[floor_id]
            self._walls.pop(floor_id, None)

    def replace_detections(self, scan_id: str, detections: Detections) -> list[Floor]:
        rows = build_rows(scan_id, detections)
        with self._lock:
            self._scan(scan_id)
            self._clear_detections(scan_id)
            for floor, walls in rows:
                self._floors[floor.id] = floor
                self._walls[floor.id] = walls
        logger.debug("Stored %d floor(s) for scan %s", len(rows), scan_id)
        return [floor.model_copy(deep=True) for floor, _ in rows]

    def mark_failed(self, scan_id: str, message: str) -> Scan:
        with self._lock:
            check_transition(self._scan(scan_id), ScanStatus.FAILED)
            self._clear_detections(scan_id)
            return self._write_scan(
                scan_id,
                {"processing_status": ScanStatus.FAILED, "processing_error": message},
            )

    def list_floors(self, scan_id: str) -> list[Floor]:
        with self._lock:
            floors = [f.model_copy(deep=True) for f in self._floors.values() if f.scan_id == scan_id]
        return sorted(floors, key=lambda f: f.sort_order)

    def get_floor(self, floor_id: str) -> Floor:
        with self._lock:
            try:
                return self._floors[floor_id].model_copy(deep=True)
            except KeyError:
                raise NotFound(f"floor {floor_id} not found") from None

    def list_walls(self, floor_id: str) -> list[Wall]:
        with self._lock:
            return [w.model_copy(deep=True) for w in self._walls.get(floor_id, [])]

    # ── plans ───────────────────────────────────────────────────────
    def next_plan_reference(self) -> str:
        with self._lock:
            self._plan_counter += 1
            return plan_reference(self._plan_counter)

    def add_plan(self, plan: Plan) -> Plan:
        with self._lock:
            if plan.id in self._plans:
                raise ValueError(f"plan {plan.id} already exists")
            self._plans[plan.id] = plan.model_copy(deep=True)
        return plan

    def get_plan(self, plan_id: str) -> Plan:
        with self._lock:
            try:
                return self._plans[plan_id].model_copy(deep=True)
            except KeyError:
                raise NotFound(f"plan {plan_id} not found") from None

    def list_plans(self, floor_id: Optional[str] = None) -> list[Plan]:
        with self._lock:
            plans = [
                p.model_copy(deep=True)
                for p in self._plans.values()
                if floor_id is None or p.floor_id == floor_id
            ]
        return sorted(plans, key=lambda p: p.reference)

    # ── audit ───────────────────────────────────────────────────────
    def record_audit(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(entry.model_copy(deep=True))

    def list_audit(self, scan_id: str) -> list[AuditEntry]:
        with self._lock:
            return [e.model_copy(deep=True) for e in self._audit if e.scan_id == scan_id]
