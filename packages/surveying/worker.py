"""Bounded background execution of scan processing jobs."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from datetime import datetime, timedelta, timezone
from typing import Optional

from packages.core.types import AuditEntry, ProcessingResult, ScanStatus
from packages.surveying.process import ScanProcessor
from packages.surveying.store import MetadataStore

logger = logging.getLogger(__name__)

STUCK_STATUSES = (ScanStatus.UPLOADED, ScanStatus.CONVERTING, ScanStatus.PROCESSING)


class ScanDispatcher:
    """Runs ``ScanProcessor.process`` on at most *max_workers* scans at once.

    Submitting a scan id that is already queued or running returns the
    existing future, so duplicate upload events run the scan once.
    """

    def __init__(self, processor: ScanProcessor, max_workers: Optional[int] = None) -> None:
        self.processor = processor
        self.max_workers = max_workers or processor.settings.max_concurrency
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="scan-worker"
        )
        self._lock = threading.Lock()
        self._in_flight: dict[str, Future] = {}

    def submit(self, scan_id: str) -> Future:
        with self._lock:
            existing = self._in_flight.get(scan_id)
            if existing is not None:
                logger.info("Scan %s already queued; not submitting again", scan_id)
                return existing
            future = self._executor.submit(self._run, scan_id)
            self._in_flight[scan_id] = future
        return future

    def _run(self, scan_id: str) -> ProcessingResult:
        try:
            return self.processor.process(scan_id)
        finally:
            with self._lock:
                self._in_flight.pop(scan_id, None)

    def in_flight(self) -> list[str]:
        with self._lock:
            return list(self._in_flight)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every submitted job has finished."""
        with self._lock:
            pending = list(self._in_flight.values())
        wait_for_futures(pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def requeue_stuck_scans(
    store: MetadataStore,
    dispatcher: ScanDispatcher,
    older_than: timedelta,
    now: Optional[datetime] = None,
) -> list[str]:
    """Re-dispatch scans left in a non-terminal state for longer than *older_than*.

    Scans the dispatcher is currently running are skipped.  A scan stuck
    mid-run is first marked ``failed`` (a run that died leaves no other way
    back into the state machine) and then started again.
    """
    now = now or datetime.now(timezone.utc)
    running = set(dispatcher.in_flight())
    requeued: list[str] = []
    for scan in store.list_scans(statuses=STUCK_STATUSES, updated_before=now - older_than):
        if scan.id in running:
            continue
        if scan.processing_status is not ScanStatus.UPLOADED:
            detail = (
                f"interrupted while {scan.processing_status.value}; "
                f"no progress since {scan.updated_at.isoformat()}"
            )
            store.mark_failed(scan.id, detail)
            store.record_audit(
                AuditEntry(scan_id=scan.id, outcome=ScanStatus.FAILED, detail=detail)
            )
        logger.warning("Requeueing stuck scan %s (%s)", scan.id, scan.processing_status.value)
        dispatcher.submit(scan.id)
        requeued.append(scan.id)
    return requeued
