"""FastAPI application for the survey pipeline.

Accepts scan uploads, processes them in the background, serves the
detected floors and walls plus the decimated viewer cloud, and exports
floor plans on demand.

Storage is chosen from the environment at startup:
``SURVEY_DATABASE_URL`` (SQLAlchemy URL, in-memory store if unset) and
``SURVEY_STORAGE_DIR`` (object directory, in-memory if unset).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from packages.core.config import PipelineSettings, load_settings
from packages.core.errors import (
    DownloadFailure,
    EmptyGeometry,
    FileTooLarge,
    InvalidTransition,
    NotFound,
    SurveyError,
    UnsupportedFormat,
    UploadFailure,
)
from packages.core.types import Plan, Scan, ScanStatus
from packages.surveying.export import export_floor_plan
from packages.surveying.ingest import check_upload, register_upload
from packages.surveying.layout import ExportOptions
from packages.surveying.process import ScanProcessor
from packages.surveying.serialize import deserialize_point_cloud, point_cloud_to_ply
from packages.surveying.sql_store import SqlMetadataStore
from packages.surveying.storage import InMemoryObjectStore, LocalObjectStore, ObjectStore
from packages.surveying.store import InMemoryMetadataStore, MetadataStore
from packages.surveying.worker import ScanDispatcher, requeue_stuck_scans

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024

app = FastAPI(title="Survey Pipeline API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── runtime wiring ───────────────────────────────────────────────────
@dataclass
class Runtime:
    store: MetadataStore
    objects: ObjectStore
    settings: PipelineSettings
    dispatcher: ScanDispatcher


_runtime: Optional[Runtime] = None


def configure(
    store: Optional[MetadataStore] = None,
    objects: Optional[ObjectStore] = None,
    settings: Optional[PipelineSettings] = None,
) -> Runtime:
    """(Re)build the stores and the dispatcher the endpoints use."""
    global _runtime
    if _runtime is not None:
        _runtime.dispatcher.shutdown(wait=False)

    settings = settings or load_settings()
    if store is None:
        url = os.environ.get("SURVEY_DATABASE_URL")
        store = SqlMetadataStore(url) if url else InMemoryMetadataStore()
    if objects is None:
        root = os.environ.get("SURVEY_STORAGE_DIR")
        objects = LocalObjectStore(root) if root else InMemoryObjectStore()

    processor = ScanProcessor(store, objects, settings)
    _runtime = Runtime(store, objects, settings, ScanDispatcher(processor))
    logger.info(
        "⚙️  Runtime ready: %s, %s, %d worker(s)",
        type(store).__name__, type(objects).__name__, settings.max_concurrency,
    )
    return _runtime


def runtime() -> Runtime:
    return _runtime or configure()


# ── error mapping ────────────────────────────────────────────────────
_STATUS_CODES: list[tuple[type[SurveyError], int]] = [
    (NotFound, 404),
    (UnsupportedFormat, 415),
    (FileTooLarge, 413),
    (InvalidTransition, 409),
    (EmptyGeometry, 422),
    (DownloadFailure, 502),
    (UploadFailure, 502),
]


@app.exception_handler(SurveyError)
async def survey_error_handler(request: Request, exc: SurveyError):
    status = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 400)
    if status >= 500:
        logger.error("❌ %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# ── endpoints ────────────────────────────────────────────────────────
@app.get("/health")
def health():
    return {"status": "ok"}


async def _read_limited(file: UploadFile, limit: int) -> bytes:
    """Read *file* in chunks, stopping as soon as it passes *limit* bytes."""
    chunks: list[bytes] = []
    received = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        received += len(chunk)
        if received > limit:
            raise FileTooLarge(f"{file.filename} exceeds the upload limit of {limit} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


@app.post("/scans", status_code=202)
async def upload_scan(
    file: UploadFile = File(...),
    scan_name: Optional[str] = Form(None),
):
    """Store an uploaded LAS/LAZ/E57 file and queue it for processing."""
    if not file.filename:
        raise HTTPException(400, "No filename provided")

    rt = runtime()
    check_upload(file.filename, file.size or 0, rt.settings)
    logger.info(f"📥 Receiving file: {file.filename}")
    data = await _read_limited(file, rt.settings.max_upload_bytes)
    scan = register_upload(file.filename, data, rt.store, rt.objects, rt.settings, scan_name)
    rt.dispatcher.submit(scan.id)
    logger.info(f"🚀 Queued scan {scan.id} for processing")
    return scan.model_dump(mode="json")


@app.get("/scans")
def list_scans(status: Optional[ScanStatus] = None):
    statuses = [status] if status else None
    return [s.model_dump(mode="json") for s in runtime().store.list_scans(statuses)]


@app.get("/scans/{scan_id}")
def get_scan(scan_id: str):
    """The scan with its floors, each floor's walls and exported plans."""
    store = runtime().store
    scan = store.get_scan(scan_id)
    floors = []
    for floor in store.list_floors(scan_id):
        floors.append(
            {
                **floor.model_dump(mode="json"),
                "walls": [w.model_dump(mode="json") for w in store.list_walls(floor.id)],
                "plans": [p.model_dump(mode="json") for p in store.list_plans(floor.id)],
            }
        )
    return {"scan": scan.model_dump(mode="json"), "floors": floors}


@app.post("/scans/{scan_id}/reprocess", status_code=202)
def reprocess_scan(scan_id: str):
    """Explicitly re-run a ``ready`` or ``failed`` scan."""
    rt = runtime()
    scan: Scan = rt.store.get_scan(scan_id)
    if not scan.processing_status.is_terminal:
        raise InvalidTransition(
            f"scan {scan_id} is {scan.processing_status.value}; wait for it to finish"
        )
    rt.dispatcher.submit(scan_id)
    logger.info(f"🔁 Re-queued scan {scan_id}")
    return {"scan_id": scan_id, "queued": True}


@app.get("/scans/{scan_id}/point-cloud")
def get_point_cloud(scan_id: str, format: str = Query("svpc", pattern="^(svpc|ply)$")):
    """The decimated viewer cloud as SVPC (default) or binary PLY."""
    rt = runtime()
    scan = rt.store.get_scan(scan_id)
    if not scan.decimated_storage_path:
        raise HTTPException(404, f"Scan {scan_id} has no decimated point cloud yet")

    data = rt.objects.get(scan.decimated_storage_path)
    if format == "ply":
        data = point_cloud_to_ply(deserialize_point_cloud(data))
    logger.info(f"📊 Sending {len(data):,} bytes of {format.upper()} for scan {scan_id}")
    return Response(content=data, media_type="application/octet-stream")


class ExportRequest(ExportOptions):
    """Body for the plan export endpoint."""
    generated_by: str = "api"


@app.post("/floors/{floor_id}/export", status_code=201)
def export_floor(floor_id: str, req: ExportRequest):
    rt = runtime()
    options = ExportOptions(**req.model_dump(exclude={"generated_by", "plan_reference"}))
    plan = export_floor_plan(floor_id, options, rt.store, rt.objects, req.generated_by)
    logger.info(f"📐 Exported plan {plan.reference} for floor {floor_id}")
    return plan.model_dump(mode="json")


@app.get("/plans/{plan_id}/download")
def download_plan(plan_id: str):
    rt = runtime()
    plan: Plan = rt.store.get_plan(plan_id)
    data = rt.objects.get(plan.storage_path)
    return Response(
        content=data,
        media_type=plan.format.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{plan.reference}.{plan.format.value}"'
        },
    )


@app.post("/maintenance/requeue-stuck")
def requeue_stuck(older_than_seconds: Optional[float] = None):
    """Re-dispatch scans stuck in a non-terminal state."""
    rt = runtime()
    seconds = older_than_seconds if older_than_seconds is not None else rt.settings.stuck_after_seconds
    requeued = requeue_stuck_scans(rt.store, rt.dispatcher, timedelta(seconds=seconds))
    logger.info(f"🧹 Requeued {len(requeued)} stuck scan(s)")
    return {"requeued": requeued}
