"""
SyncRun bookkeeping: creation, single-flight guard, stale cleanup,
cancellation requests, progress and finalization.
"""
from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from kortingdeal.models import SyncRun
from kortingdeal.services.feed_config import get_feed_settings

logger = logging.getLogger(__name__)

RUN_KINDS = ("manual", "scheduled")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")


class RunAlreadyActive(RuntimeError):
    def __init__(self, run_id: uuid.UUID):
        self.run_id = run_id
        super().__init__(f"A sync run is already in progress (runId={run_id})")


class RunFinished(RuntimeError):
    def __init__(self, run: SyncRun):
        self.run_id = run.id
        self.status = run.status
        super().__init__(f"Sync run {run.id} is already {run.status}")


def format_eta(seconds: Optional[float]) -> Optional[str]:
    if seconds is None or seconds < 0:
        return None
    if seconds > 60:
        return f"~{math.ceil(seconds / 60)} min"
    return f"~{math.ceil(seconds)} sec"


def estimate_remaining(processed: int, total: int, elapsed_seconds: float, processed_before: int = 0) -> Optional[float]:
    """Seconds left at the observed processed-per-second rate of this invocation."""
    done = processed - processed_before
    if done <= 0 or elapsed_seconds <= 0:
        return None
    if total <= processed:
        return 0.0
    rate = done / elapsed_seconds
    return (total - processed) / rate


def create_run(session: Session, kind: str = "manual", selection_policy: str = "full_pass") -> SyncRun:
    if kind not in RUN_KINDS:
        raise ValueError(f"Unsupported sync kind: {kind}")
    run = SyncRun(
        kind=kind,
        status="started",
        stage="idle",
        stage_message="Waiting to start",
        selection_policy=selection_policy,
        state={},
        started_at=datetime.now(timezone.utc),
    )
    session.add(run)
    session.flush()
    logger.info(f"[SYNC] Created {kind} run {run.id} ({selection_policy})")
    return run


def get_active_run(session: Session) -> SyncRun | None:
    return session.scalars(
        select(SyncRun).where(SyncRun.status == "started").order_by(SyncRun.started_at.desc())
    ).first()


def ensure_no_active_run(session: Session) -> None:
    active = get_active_run(session)
    if active is not None:
        raise RunAlreadyActive(active.id)


def cleanup_stale_runs(session: Session, max_age_minutes: int = 60) -> int:
    """Fail runs left in ``started`` by a crashed worker."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(1, int(max_age_minutes)))
    runs = session.scalars(
        select(SyncRun).where(SyncRun.status == "started").where(SyncRun.updated_at < cutoff)
    ).all()
    for run in runs:
        run.status = "failed"
        run.stage = "failed"
        run.completed_at = datetime.now(timezone.utc)
        if not run.error_message:
            run.error_message = "Run was not updated for too long and was marked as stale"
    if runs:
        session.flush()
        logger.warning(f"[SYNC] Marked {len(runs)} stale runs as failed")
    return len(runs)


def list_runs(session: Session, limit: int = 10) -> list[SyncRun]:
    return list(session.scalars(select(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit)).all())


def request_cancel(session: Session, run: SyncRun) -> bool:
    """Flag a running sync for cancellation; the worker stops at its next checkpoint."""
    if run.status != "started":
        return False
    run.cancel_requested = True
    run.stage_message = "Cancelling after the current batch..."
    session.flush()
    logger.info(f"[SYNC] Cancellation requested for run {run.id}")
    return True


def update_progress(
    run: SyncRun,
    processed_products: Optional[int] = None,
    current_batch: Optional[int] = None,
    total_batches: Optional[int] = None,
    total_products: Optional[int] = None,
    products_added: Optional[int] = None,
) -> SyncRun:
    """Apply counter updates; values lower than the stored ones are ignored."""
    for attr, value in (
        ("processed_products", processed_products),
        ("current_batch", current_batch),
        ("total_batches", total_batches),
        ("total_products", total_products),
        ("products_added", products_added),
    ):
        if value is not None and value > (getattr(run, attr) or 0):
            setattr(run, attr, value)
    return run


def finalize_run(session: Session, run: SyncRun, status: str, error_message: Optional[str] = None) -> bool:
    """
    Move a run to its terminal status. Only the first call has an effect.
    """
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Unsupported terminal status: {status}")
    if run.status in TERMINAL_STATUSES:
        logger.warning(f"[SYNC] Run {run.id} already finalized as {run.status}; ignoring {status}")
        return False

    now = datetime.now(timezone.utc)
    run.status = status
    run.stage = status
    run.completed_at = now
    run.estimated_remaining = None
    if error_message:
        run.error_message = error_message
    run.stage_message = {
        "completed": f"Done: {run.products_added} added, {run.products_updated} updated",
        "failed": f"Failed: {error_message or run.error_message or 'unknown error'}",
        "cancelled": f"Cancelled after {run.processed_products} products",
    }[status]

    if status == "completed":
        feed_settings = get_feed_settings(session)
        if feed_settings is not None:
            feed_settings.last_sync_at = now

    session.commit()
    logger.info(
        f"[SYNC] Run {run.id} {status}. Processed: {run.processed_products}, "
        f"Added: {run.products_added}, Updated: {run.products_updated}, "
        f"Removed: {run.products_removed}, Failed batches: {run.failed_batches}"
    )
    return True


def run_to_dict(run: SyncRun) -> dict:
    return {
        "id": str(run.id),
        "kind": run.kind,
        "status": run.status,
        "stage": run.stage,
        "stageMessage": run.stage_message,
        "estimatedRemaining": run.estimated_remaining,
        "selectionPolicy": run.selection_policy,
        "totalProducts": run.total_products,
        "processedProducts": run.processed_products,
        "currentBatch": run.current_batch,
        "totalBatches": run.total_batches,
        "productsAdded": run.products_added,
        "productsUpdated": run.products_updated,
        "productsRemoved": run.products_removed,
        "failedBatches": run.failed_batches,
        "cancelRequested": run.cancel_requested,
        "errorMessage": run.error_message,
        "startedAt": run.started_at.isoformat() if run.started_at else None,
        "completedAt": run.completed_at.isoformat() if run.completed_at else None,
    }
