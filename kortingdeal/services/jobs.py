from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from kortingdeal.feed.client import FeedClient
from kortingdeal.models import SyncRun
from kortingdeal.services.feed_config import load_feed_config
from kortingdeal.services.feed_sync_handler import FeedSyncHandler

logger = logging.getLogger(__name__)


def execute_run(session: Session, run: SyncRun, time_budget_seconds: Optional[float] = None) -> SyncRun:
    """Run (or resume) the pipeline for ``run`` in the current thread."""
    config = load_feed_config(session, selection_policy=run.selection_policy)
    client = FeedClient(config.feed_url)
    handler = FeedSyncHandler(
        session=session,
        run=run,
        client=client,
        config=config,
        time_budget_seconds=time_budget_seconds,
    )
    return handler.sync()


def start_background_sync(session_factory: Any, run_id: uuid.UUID, time_budget_seconds: Optional[float] = None) -> None:
    """
    Start the feed sync for an already created run in a background thread.
    """

    def _run() -> None:
        # the creating request may not have committed yet
        for _ in range(200):
            with session_factory() as session:
                if session.get(SyncRun, run_id) is not None:
                    break
            time.sleep(0.1)
        else:
            logger.error(f"[SYNC] Run {run_id} not found after waiting.")
            return

        try:
            with session_factory() as session:
                run = session.get(SyncRun, run_id)
                if run is None or run.status != "started":
                    return
                execute_run(session, run, time_budget_seconds=time_budget_seconds)
        except Exception as e:
            logger.exception(f"[SYNC] Background run {run_id} crashed: {e}")
            with session_factory() as session:
                run = session.get(SyncRun, run_id)
                if run is not None and run.status == "started":
                    run.status = "failed"
                    run.stage = "failed"
                    run.error_message = str(e)
                    run.completed_at = datetime.now(timezone.utc)
                    session.commit()

    t = threading.Thread(target=_run, daemon=True)
    t.start()
