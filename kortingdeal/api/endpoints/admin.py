import logging
import uuid
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from kortingdeal.db import get_session
from kortingdeal.exceptions import FeedSyncError
from kortingdeal.models import FeedSettings, SyncRun
from kortingdeal.schemas.product import ProductStatsResponse
from kortingdeal.schemas.sync import FeedSettingsResponse, FeedSettingsUpdate, SyncRunResponse, SyncStartRequest
from kortingdeal.services import catalog, sync_commands
from kortingdeal.services.feed_config import get_feed_settings
from kortingdeal.services.jobs import start_background_sync
from kortingdeal.services.sync_runs import (
    RunAlreadyActive,
    RunFinished,
    cleanup_stale_runs,
    create_run,
    ensure_no_active_run,
    list_runs,
    request_cancel,
)
from kortingdeal.session_factory import session_factory
from kortingdeal.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


def _get_run_or_404(session: Session, run_id: uuid.UUID) -> SyncRun:
    run = session.get(SyncRun, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return run


@router.post("/sync")
def start_sync(
    payload: SyncStartRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
) -> dict:
    cleanup_stale_runs(session, settings.sync_stale_minutes)
    try:
        ensure_no_active_run(session)
    except RunAlreadyActive as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "runId": str(e.run_id)})

    run = create_run(session, kind=payload.kind, selection_policy=payload.selection_policy or settings.feed_selection_policy)
    session.commit()
    background_tasks.add_task(start_background_sync, session_factory, uuid.UUID(str(run.id)))
    return {"runId": str(run.id)}


@router.get("/sync/runs", response_model=List[SyncRunResponse])
def get_sync_runs(limit: int = Query(default=10, ge=1, le=100), session: Session = Depends(get_session)):
    return list_runs(session, limit=limit)


@router.get("/sync/runs/{run_id}", response_model=SyncRunResponse)
def get_sync_run(run_id: uuid.UUID, session: Session = Depends(get_session)):
    """Poll target for the admin progress view."""
    return _get_run_or_404(session, run_id)


@router.post("/sync/runs/{run_id}/cancel", response_model=SyncRunResponse)
def cancel_sync_run(run_id: uuid.UUID, session: Session = Depends(get_session)):
    run = _get_run_or_404(session, run_id)
    if not request_cancel(session, run):
        raise HTTPException(status_code=409, detail=f"Sync run is already {run.status}")
    session.commit()
    return run


@router.post("/sync/runs/{run_id}/resume")
def resume_sync_run(
    run_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
) -> dict:
    run = _get_run_or_404(session, run_id)
    if run.status != "started":
        raise HTTPException(status_code=409, detail=f"Sync run is already {run.status}")
    if run.selection_policy != "full_pass":
        raise HTTPException(status_code=400, detail="Only full_pass runs can be resumed")
    background_tasks.add_task(start_background_sync, session_factory, uuid.UUID(str(run.id)))
    return {"runId": str(run.id), "nextChunkIndex": (run.state or {}).get("next_chunk_index", 0)}


@router.get("/stats", response_model=ProductStatsResponse)
def get_stats(session: Session = Depends(get_session)):
    stats = catalog.product_stats(session)
    return ProductStatsResponse(
        total_products=stats["totalProducts"],
        featured_products=stats["featuredProducts"],
        inactive_products=stats["inactiveProducts"],
        total_advertisers=stats["totalAdvertisers"],
    )


@router.get("/settings", response_model=FeedSettingsResponse)
def get_feed_settings_endpoint(session: Session = Depends(get_session)):
    row = get_feed_settings(session)
    if row is None:
        return FeedSettingsResponse(feed_url=settings.feed_url or None, seo_title_template=settings.seo_title_template)
    return row


@router.put("/settings", response_model=FeedSettingsResponse)
def update_feed_settings(payload: FeedSettingsUpdate, session: Session = Depends(get_session)):
    row = get_feed_settings(session)
    if row is None:
        row = FeedSettings()
        session.add(row)
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(row, key, value)
    session.flush()
    session.commit()
    return row


@router.post("/pipeline")
def run_pipeline_command(command: sync_commands.PipelineCommand, session: Session = Depends(get_session)) -> dict:
    """
    Execute one pipeline step. Lets an external host drive a sync in short
    invocations: create_run, then fetch_chunk / upsert_batch / update_progress
    in a loop, then link_variants and complete_run.
    """
    try:
        return sync_commands.dispatch(session, command)
    except sync_commands.RunNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RunAlreadyActive as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "runId": str(e.run_id)})
    except RunFinished as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "status": e.status})
    except FeedSyncError as e:
        logger.error(f"[PIPELINE] {command.action} failed: {e.message}")
        raise HTTPException(status_code=502, detail=e.to_dict())
