"""
Step-by-step pipeline commands for hosts that run the sync in short,
stateless invocations. Each request carries one command; all state lives on
the SyncRun row between calls.
"""
from __future__ import annotations

import logging
import uuid
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kortingdeal.feed.client import FeedClient
from kortingdeal.models import SyncRun
from kortingdeal.normalization import has_required_fields, normalize_row
from kortingdeal.services.feed_config import load_feed_config
from kortingdeal.services.product_store import (
    UpsertResult,
    category_index,
    deactivate_missing,
    refresh_counts,
    seed_categories,
    upsert_products,
)
from kortingdeal.services.sync_runs import (
    TERMINAL_STATUSES,
    RunFinished,
    cleanup_stale_runs,
    create_run,
    ensure_no_active_run,
    finalize_run,
    request_cancel,
    run_to_dict,
    update_progress,
)
from kortingdeal.services.variant_linker import link_variants
from kortingdeal.settings import settings

logger = logging.getLogger(__name__)


class CreateRun(BaseModel):
    action: Literal["create_run"] = "create_run"
    kind: Literal["manual", "scheduled"] = "manual"
    selection_policy: Optional[str] = None


class FetchChunk(BaseModel):
    action: Literal["fetch_chunk"] = "fetch_chunk"
    run_id: uuid.UUID
    chunk_index: int = Field(default=0, ge=0)
    chunk_size: Optional[int] = Field(default=None, ge=1)


class UpsertBatch(BaseModel):
    action: Literal["upsert_batch"] = "upsert_batch"
    run_id: uuid.UUID
    rows: List[dict[str, Any]]
    batch_number: Optional[int] = Field(default=None, ge=1)


class UpdateProgress(BaseModel):
    action: Literal["update_progress"] = "update_progress"
    run_id: uuid.UUID
    stage: Optional[Literal["fetching", "parsing", "upserting", "linking", "paused"]] = None
    stage_message: Optional[str] = None
    estimated_remaining: Optional[str] = None
    processed_products: Optional[int] = Field(default=None, ge=0)
    current_batch: Optional[int] = Field(default=None, ge=0)
    total_batches: Optional[int] = Field(default=None, ge=0)
    total_products: Optional[int] = Field(default=None, ge=0)


class CompleteRun(BaseModel):
    action: Literal["complete_run"] = "complete_run"
    run_id: uuid.UUID
    status: Literal["completed", "failed", "cancelled"] = "completed"
    error_message: Optional[str] = None
    deactivate_missing: bool = False


class CancelRun(BaseModel):
    action: Literal["cancel_run"] = "cancel_run"
    run_id: uuid.UUID


class LinkVariants(BaseModel):
    action: Literal["link_variants"] = "link_variants"


PipelineCommand = Annotated[
    Union[CreateRun, FetchChunk, UpsertBatch, UpdateProgress, CompleteRun, CancelRun, LinkVariants],
    Field(discriminator="action"),
]


class RunNotFound(LookupError):
    pass


def _load_run(session: Session, run_id: uuid.UUID) -> SyncRun:
    run = session.get(SyncRun, run_id)
    if run is None:
        raise RunNotFound(f"Sync run not found: {run_id}")
    return run


def _ensure_open(run: SyncRun) -> None:
    if run.status in TERMINAL_STATUSES:
        raise RunFinished(run)


def _cancel_if_requested(session: Session, run: SyncRun) -> Optional[dict]:
    """Finalize a run whose cancel flag is set; no further step may start."""
    if not run.cancel_requested:
        return None
    finalize_run(session, run, "cancelled")
    return {"cancelled": True, **run_to_dict(run)}


def _create_run(session: Session, command: CreateRun) -> dict:
    cleanup_stale_runs(session, settings.sync_stale_minutes)
    ensure_no_active_run(session)
    config = load_feed_config(session)
    run = create_run(session, kind=command.kind, selection_policy=command.selection_policy or config.selection_policy)
    session.commit()
    return {"runId": str(run.id), "batchSize": config.batch_size, "chunkSize": config.chunk_size}


def _fetch_chunk(session: Session, command: FetchChunk) -> dict:
    run = _load_run(session, command.run_id)
    _ensure_open(run)
    cancelled = _cancel_if_requested(session, run)
    if cancelled:
        return cancelled
    config = load_feed_config(session)
    chunk_size = command.chunk_size or config.chunk_size

    run.stage = "fetching"
    run.stage_message = f"Fetching feed chunk {command.chunk_index + 1}"
    chunk = FeedClient(config.feed_url).fetch_chunk(command.chunk_index, chunk_size)

    update_progress(run, total_products=chunk.total_count)
    run.state = {**(run.state or {}), "next_chunk_index": chunk.next_chunk_index, "chunk_size": chunk_size}
    session.commit()
    return {
        "rows": chunk.rows,
        "chunkIndex": chunk.chunk_index,
        "totalProducts": chunk.total_count,
        "hasMore": chunk.has_more,
        "nextChunkIndex": chunk.next_chunk_index,
        "malformed": chunk.stats.malformed,
    }


def _upsert_batch(session: Session, command: UpsertBatch) -> dict:
    run = _load_run(session, command.run_id)
    _ensure_open(run)
    cancelled = _cancel_if_requested(session, run)
    if cancelled:
        return cancelled
    config = load_feed_config(session)
    seed_categories(session)
    categories = category_index(session)

    rows = [{k: "" if v is None else str(v) for k, v in row.items()} for row in command.rows]
    products = [
        normalize_row(
            row,
            categories,
            seo_template=config.seo_title_template,
            description_prefix=config.seo_description_prefix,
            default_currency=config.default_currency,
            append_full_id=config.slug_append_full_id,
        )
        for row in rows
        if has_required_fields(row)
    ]
    batch_number = command.batch_number or run.current_batch + 1
    failed = False
    try:
        result = upsert_products(session, products)
        session.flush()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"[PIPELINE] Batch {batch_number} rejected by the store: {e}")
        run.failed_batches += 1
        result = UpsertResult(upserted=0, added=0, updated=0)
        failed = True

    run.stage = "upserting"
    run.current_batch = max(run.current_batch, batch_number)
    run.processed_products += result.upserted if not failed else len(products)
    run.products_added += result.added
    run.products_updated += result.updated
    session.commit()
    return {
        "upserted": result.upserted,
        "added": result.added,
        "updated": result.updated,
        "skipped": len(command.rows) - len(products),
        "failedBatches": run.failed_batches,
    }


def _update_progress(session: Session, command: UpdateProgress) -> dict:
    run = _load_run(session, command.run_id)
    _ensure_open(run)
    update_progress(
        run,
        processed_products=command.processed_products,
        current_batch=command.current_batch,
        total_batches=command.total_batches,
        total_products=command.total_products,
    )
    if command.stage:
        run.stage = command.stage
    if command.stage_message is not None:
        run.stage_message = command.stage_message
    if command.estimated_remaining is not None:
        run.estimated_remaining = command.estimated_remaining
    session.commit()
    return run_to_dict(run)


def _complete_run(session: Session, command: CompleteRun) -> dict:
    run = _load_run(session, command.run_id)
    _ensure_open(run)
    if command.status == "completed":
        if command.deactivate_missing and not run.failed_batches:
            run.products_removed += deactivate_missing(session, run.started_at)
        refresh_counts(session)
    finalize_run(session, run, command.status, error_message=command.error_message)
    return run_to_dict(run)


def _cancel_run(session: Session, command: CancelRun) -> dict:
    run = _load_run(session, command.run_id)
    accepted = request_cancel(session, run)
    session.commit()
    return {"cancelRequested": accepted, **run_to_dict(run)}


def _link_variants(session: Session, command: LinkVariants) -> dict:
    linked = link_variants(session)
    session.commit()
    return {"linked": linked}


def dispatch(session: Session, command: BaseModel) -> dict:
    """Run one pipeline command and return its JSON-ready result."""
    logger.info(f"[PIPELINE] {getattr(command, 'action', type(command).__name__)}")
    if isinstance(command, CreateRun):
        return _create_run(session, command)
    if isinstance(command, FetchChunk):
        return _fetch_chunk(session, command)
    if isinstance(command, UpsertBatch):
        return _upsert_batch(session, command)
    if isinstance(command, UpdateProgress):
        return _update_progress(session, command)
    if isinstance(command, CompleteRun):
        return _complete_run(session, command)
    if isinstance(command, CancelRun):
        return _cancel_run(session, command)
    if isinstance(command, LinkVariants):
        return _link_variants(session, command)
    raise ValueError(f"Unsupported pipeline command: {type(command).__name__}")
