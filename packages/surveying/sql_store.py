"""SQLAlchemy-backed ``MetadataStore``.

Every public method runs in its own transaction, so
``replace_detections`` and ``mark_failed`` either apply in full or not
at all.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from packages.core.errors import NotFound
from packages.core.types import (
    AuditEntry,
    BBox,
    Floor,
    PaperSize,
    Plan,
    PlanFormat,
    Point2D,
    Scan,
    ScanStatus,
    SourceFormat,
    Wall,
)
from packages.surveying.store import Detections, build_rows, check_transition, plan_reference

logger = logging.getLogger(__name__)


def _utc(value: datetime) -> datetime:
    """SQLite hands datetimes back naive; everything is stored in UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ScanRow(Base):
    __tablename__ = "survey_scans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    scan_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    source_format: Mapped[str] = mapped_column(String(8), nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    converted_storage_path: Mapped[str | None] = mapped_column(Text)
    decimated_storage_path: Mapped[str | None] = mapped_column(Text)
    point_count: Mapped[int | None] = mapped_column(Integer)
    decimated_point_count: Mapped[int | None] = mapped_column(Integer)
    bounds: Mapped[dict | None] = mapped_column(JSON)
    processing_status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    processing_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class FloorRow(Base):
    __tablename__ = "survey_floors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    scan_id: Mapped[str] = mapped_column(
        ForeignKey("survey_scans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    label: Mapped[str] = mapped_column(Text, nullable=False)
    z_height: Mapped[float] = mapped_column(Float, nullable=False)
    z_range_min: Mapped[float] = mapped_column(Float, nullable=False)
    z_range_max: Mapped[float] = mapped_column(Float, nullable=False)
    point_count: Mapped[int] = mapped_column(Integer, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False)


class WallRow(Base):
    __tablename__ = "survey_walls"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    floor_id: Mapped[str] = mapped_column(
        ForeignKey("survey_floors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    start_x: Mapped[float] = mapped_column(Float, nullable=False)
    start_y: Mapped[float] = mapped_column(Float, nullable=False)
    end_x: Mapped[float] = mapped_column(Float, nullable=False)
    end_y: Mapped[float] = mapped_column(Float, nullable=False)
    thickness: Mapped[float] = mapped_column(Float, nullable=False)
    length: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)


class PlanRow(Base):
    __tablename__ = "survey_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    # no foreign key: plans outlive the floor rows a reprocess replaces
    floor_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    reference: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    format: Mapped[str] = mapped_column(String(8), nullable=False)
    paper_size: Mapped[str] = mapped_column(String(4), nullable=False)
    scale: Mapped[str] = mapped_column(String(16), nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    generated_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PlanSequenceRow(Base):
    __tablename__ = "survey_plan_sequence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AuditRow(Base):
    __tablename__ = "survey_audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    detail: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ── row ↔ model ──────────────────────────────────────────────────────
def _scan_model(row: ScanRow) -> Scan:
    return Scan(
        id=row.id,
        original_filename=row.original_filename,
        scan_name=row.scan_name,
        source_format=SourceFormat(row.source_format),
        storage_path=row.storage_path,
        file_size_bytes=row.file_size_bytes,
        converted_storage_path=row.converted_storage_path,
        decimated_storage_path=row.decimated_storage_path,
        point_count=row.point_count,
        decimated_point_count=row.decimated_point_count,
        bounds=BBox.model_validate(row.bounds) if row.bounds else None,
        processing_status=ScanStatus(row.processing_status),
        processing_error=row.processing_error,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _apply_scan(row: ScanRow, scan: Scan) -> None:
    row.original_filename = scan.original_filename
    row.scan_name = scan.scan_name
    row.source_format = scan.source_format.value
    row.storage_path = scan.storage_path
    row.file_size_bytes = scan.file_size_bytes
    row.converted_storage_path = scan.converted_storage_path
    row.decimated_storage_path = scan.decimated_storage_path
    row.point_count = scan.point_count
    row.decimated_point_count = scan.decimated_point_count
    row.bounds = scan.bounds.model_dump() if scan.bounds else None
    row.processing_status = scan.processing_status.value
    row.processing_error = scan.processing_error
    row.created_at = scan.created_at
    row.updated_at = scan.updated_at


def _floor_model(row: FloorRow) -> Floor:
    return Floor(
        id=row.id,
        scan_id=row.scan_id,
        label=row.label,
        z_height=row.z_height,
        z_range_min=row.z_range_min,
        z_range_max=row.z_range_max,
        point_count=row.point_count,
        confidence=row.confidence,
        sort_order=row.sort_order,
    )


def _wall_model(row: WallRow) -> Wall:
    return Wall(
        id=row.id,
        floor_id=row.floor_id,
        label=row.label,
        start=Point2D(x=row.start_x, y=row.start_y),
        end=Point2D(x=row.end_x, y=row.end_y),
        thickness=row.thickness,
        length=row.length,
        confidence=row.confidence,
    )


def _plan_model(row: PlanRow) -> Plan:
    return Plan(
        id=row.id,
        floor_id=row.floor_id,
        reference=row.reference,
        format=PlanFormat(row.format),
        paper_size=PaperSize(row.paper_size),
        scale=row.scale,
        storage_path=row.storage_path,
        file_size_bytes=row.file_size_bytes,
        generated_by=row.generated_by,
        created_at=_utc(row.created_at),
    )


def make_engine(url: str) -> Engine:
    """Engine for *url*; in-memory SQLite shares one connection across threads."""
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url)


class SqlMetadataStore:
    def __init__(self, url_or_engine: str | Engine = "sqlite://") -> None:
        self.engine = (
            make_engine(url_or_engine) if isinstance(url_or_engine, str) else url_or_engine
        )
        Base.metadata.create_all(self.engine)
        self._session = sessionmaker(self.engine, expire_on_commit=False)

    def _scan_row(self, session: Session, scan_id: str) -> ScanRow:
        row = session.get(ScanRow, scan_id)
        if row is None:
            raise NotFound(f"scan {scan_id} not found")
        return row

    # ── scans ───────────────────────────────────────────────────────
    def create_scan(self, scan: Scan) -> Scan:
        with self._session.begin() as session:
            row = ScanRow(id=scan.id)
            _apply_scan(row, scan)
            session.add(row)
        return scan.model_copy(deep=True)

    def get_scan(self, scan_id: str) -> Scan:
        with self._session() as session:
            return _scan_model(self._scan_row(session, scan_id))

    def _write_scan(self, row: ScanRow, fields: dict) -> Scan:
        data = _scan_model(row).model_dump()
        data.update(fields)
        data["updated_at"] = _now()
        scan = Scan.model_validate(data)
        _apply_scan(row, scan)
        return scan

    def update_scan(self, scan_id: str, **fields) -> Scan:
        with self._session.begin() as session:
            return self._write_scan(self._scan_row(session, scan_id), fields)

    def set_status(self, scan_id: str, status: ScanStatus) -> Scan:
        if status is ScanStatus.FAILED:
            raise ValueError("use mark_failed() to fail a scan")
        with self._session.begin() as session:
            row = self._scan_row(session, scan_id)
            check_transition(_scan_model(row), status)
            return self._write_scan(row, {"processing_status": status, "processing_error": None})

    def list_scans(
        self,
        statuses: Optional[Iterable[ScanStatus]] = None,
        updated_before: Optional[datetime] = None,
    ) -> list[Scan]:
        stmt = select(ScanRow).order_by(ScanRow.created_at)
        if statuses is not None:
            stmt = stmt.where(ScanRow.processing_status.in_([s.value for s in statuses]))
        with self._session() as session:
            scans = [_scan_model(row) for row in session.scalars(stmt)]
        if updated_before is not None:
            scans = [s for s in scans if s.updated_at < updated_before]
        return scans

    # ── detections ──────────────────────────────────────────────────
    @staticmethod
    def _clear_detections(session: Session, scan_id: str) -> None:
        floor_ids = select(FloorRow.id).where(FloorRow.scan_id == scan_id)
        session.execute(delete(WallRow).where(WallRow.floor_id.in_(floor_ids)))
        session.execute(delete(FloorRow).where(FloorRow.scan_id == scan_id))

    def replace_detections(self, scan_id: str, detections: Detections) -> list[Floor]:
        rows = build_rows(scan_id, detections)
        with self._session.begin() as session:
            self._scan_row(session, scan_id)
            self._clear_detections(session, scan_id)
            for floor, walls in rows:
                session.add(FloorRow(**floor.model_dump()))
                session.flush()
                for position, wall in enumerate(walls):
                    session.add(
                        WallRow(
                            id=wall.id,
                            floor_id=floor.id,
                            position=position,
                            label=wall.label,
                            start_x=wall.start.x,
                            start_y=wall.start.y,
                            end_x=wall.end.x,
                            end_y=wall.end.y,
                            thickness=wall.thickness,
                            length=wall.length,
                            confidence=wall.confidence,
                        )
                    )
        logger.debug("Stored %d floor(s) for scan %s", len(rows), scan_id)
        return [floor for floor, _ in rows]

    def mark_failed(self, scan_id: str, message: str) -> Scan:
        with self._session.begin() as session:
            row = self._scan_row(session, scan_id)
            check_transition(_scan_model(row), ScanStatus.FAILED)
            self._clear_detections(session, scan_id)
            return self._write_scan(
                row, {"processing_status": ScanStatus.FAILED, "processing_error": message}
            )

    def list_floors(self, scan_id: str) -> list[Floor]:
        stmt = select(FloorRow).where(FloorRow.scan_id == scan_id).order_by(FloorRow.sort_order)
        with self._session() as session:
            return [_floor_model(row) for row in session.scalars(stmt)]

    def get_floor(self, floor_id: str) -> Floor:
        with self._session() as session:
            row = session.get(FloorRow, floor_id)
            if row is None:
                raise NotFound(f"floor {floor_id} not found")
            return _floor_model(row)

    def list_walls(self, floor_id: str) -> list[Wall]:
        stmt = select(WallRow).where(WallRow.floor_id == floor_id).order_by(WallRow.position)
        with self._session() as session:
            return [_wall_model(row) for row in session.scalars(stmt)]

    # ── plans ───────────────────────────────────────────────────────
    def next_plan_reference(self) -> str:
        with self._session.begin() as session:
            row = PlanSequenceRow(created_at=_now())
            session.add(row)
            session.flush()
            return plan_reference(row.id)

    def add_plan(self, plan: Plan) -> Plan:
        with self._session.begin() as session:
            session.add(
                PlanRow(
                    id=plan.id,
                    floor_id=plan.floor_id,
                    reference=plan.reference,
                    format=plan.format.value,
                    paper_size=plan.paper_size.value,
                    scale=plan.scale,
                    storage_path=plan.storage_path,
                    file_size_bytes=plan.file_size_bytes,
                    generated_by=plan.generated_by,
                    created_at=plan.created_at,
                )
            )
        return plan

    def get_plan(self, plan_id: str) -> Plan:
        with self._session() as session:
            row = session.get(PlanRow, plan_id)
            if row is None:
                raise NotFound(f"plan {plan_id} not found")
            return _plan_model(row)

    def list_plans(self, floor_id: Optional[str] = None) -> list[Plan]:
        stmt = select(PlanRow).order_by(PlanRow.reference)
        if floor_id is not None:
            stmt = stmt.where(PlanRow.floor_id == floor_id)
        with self._session() as session:
            return [_plan_model(row) for row in session.scalars(stmt)]

    # ── audit ───────────────────────────────────────────────────────
    def record_audit(self, entry: AuditEntry) -> None:
        with self._session.begin() as session:
            session.add(
                AuditRow(
                    scan_id=entry.scan_id,
                    outcome=entry.outcome.value,
                    detail=entry.detail,
                    created_at=entry.created_at,
                )
            )

    def list_audit(self, scan_id: str) -> list[AuditEntry]:
        stmt = select(AuditRow).where(AuditRow.scan_id == scan_id).order_by(AuditRow.id)
        with self._session() as session:
            return [
                AuditEntry(
                    scan_id=row.scan_id,
                    outcome=ScanStatus(row.outcome),
                    detail=row.detail,
                    created_at=_utc(row.created_at),
                )
                for row in session.scalars(stmt)
            ]
