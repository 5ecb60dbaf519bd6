"""
Feed sync orchestration.

One handler drives one SyncRun through its stages:
idle -> fetching -> parsing -> upserting -> linking -> completed | failed | cancelled.

Full-pass runs walk the feed chunk by chunk and store the next chunk index on
the run after every chunk, so an interrupted or time-sliced run continues
where it stopped. Snapshot policies (top_discount, random_sample) load one
bounded parse of the feed and process it in a single invocation.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kortingdeal.exceptions import BatchUpsertFailure, ConfigurationError, FeedSyncError, SyncCancelled
from kortingdeal.feed.client import FeedClient
from kortingdeal.feed.csv_parser import ParseStats, RawFeedRow, parse_csv
from kortingdeal.models import SyncRun
from kortingdeal.normalization import NormalizedProduct, has_required_fields, normalize_row
from kortingdeal.services.feed_config import FeedSyncConfig
from kortingdeal.services.product_store import (
    category_index,
    deactivate_missing,
    refresh_counts,
    seed_categories,
    upsert_products,
)
from kortingdeal.services.selection import SelectionPolicy, build_policy
from kortingdeal.services.sync_runs import estimate_remaining, finalize_run, format_eta
from kortingdeal.services.variant_linker import link_variants

logger = logging.getLogger(__name__)


@dataclass
class FeedSyncHandler:
    """
    Runs the feed pipeline for a single SyncRun.

    ``should_cancel`` is polled before every chunk and every batch; by default
    it re-reads the run's ``cancel_requested`` flag from the store.
    ``time_budget_seconds`` bounds one invocation of a full-pass run: once it
    is spent the handler stops at the next chunk boundary and leaves the run
    in ``started`` for a later resume.
    """

    session: Session
    run: SyncRun
    client: FeedClient
    config: FeedSyncConfig
    policy: Optional[SelectionPolicy] = None
    should_cancel: Optional[Callable[[], bool]] = None
    time_budget_seconds: Optional[float] = None
    clock: Callable[[], float] = time.monotonic

    start_time: float = 0.0
    processed_at_start: int = 0
    categories: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.policy is None:
            self.policy = build_policy(self.run.selection_policy or self.config.selection_policy, self.config.selection_limit)
        if self.should_cancel is None:
            self.should_cancel = self._cancel_requested_in_store

    def _cancel_requested_in_store(self) -> bool:
        self.session.refresh(self.run, attribute_names=["cancel_requested"])
        return bool(self.run.cancel_requested)

    def _checkpoint(self) -> None:
        if self.should_cancel():
            raise SyncCancelled("Sync cancelled by user")

    def _set_stage(self, stage: str, message: str) -> None:
        self.run.stage = stage
        self.run.stage_message = message
        self.session.commit()
        logger.info(f"[SYNC] {stage}: {message}")

    def _budget_spent(self) -> bool:
        if self.time_budget_seconds is None:
            return False
        return self.clock() - self.start_time >= self.time_budget_seconds

    def sync(self) -> SyncRun:
        """
        Run (or continue) the pipeline. Returns the run; its status is
        ``started`` only when a time budget paused a full-pass run.
        """
        self.start_time = self.clock()
        self.processed_at_start = self.run.processed_products or 0
        logger.info(f"[SYNC] Run {self.run.id} starting ({self.policy.name})")

        try:
            if not self.config.feed_url:
                raise ConfigurationError("Feed URL not configured")
            seed_categories(self.session)
            self.categories = category_index(self.session)
            self.session.commit()

            if self.policy.chunked:
                finished = self._run_chunked()
                if not finished:
                    return self.run
            else:
                self._run_snapshot()

            self._link_and_reconcile()
            finalize_run(self.session, self.run, "completed")
        except SyncCancelled:
            self.session.rollback()
            logger.info(f"[SYNC] Run {self.run.id} cancelled at batch {self.run.current_batch}")
            finalize_run(self.session, self.run, "cancelled")
        except FeedSyncError as e:
            self.session.rollback()
            logger.error(f"[SYNC] Run {self.run.id} failed: {e.message}")
            finalize_run(self.session, self.run, "failed", error_message=e.message)
        except Exception as e:
            self.session.rollback()
            logger.exception(f"[SYNC] Run {self.run.id} failed unexpectedly")
            finalize_run(self.session, self.run, "failed", error_message=str(e) or type(e).__name__)
        return self.run

    def _run_chunked(self) -> bool:
        """Process chunks from the stored cursor. Returns False when paused by the time budget."""
        state = dict(self.run.state or {})
        chunk_index = int(state.get("next_chunk_index", 0))
        chunk_size = int(state.get("chunk_size", self.config.chunk_size))

        while True:
            self._checkpoint()
            self._set_stage("fetching", f"Fetching feed chunk {chunk_index + 1}")
            chunk = self.client.fetch_chunk(chunk_index, chunk_size)

            if not self.run.total_products:
                self.run.total_products = chunk.total_count
                self.run.total_batches = math.ceil(chunk.total_count / self.config.batch_size)

            self._set_stage("parsing", f"Normalizing {len(chunk.rows)} rows of chunk {chunk_index + 1}")
            products = self.policy.select(self._normalize(chunk.rows, chunk.stats))

            self._upsert_batches(products)

            state.update(
                next_chunk_index=chunk.next_chunk_index,
                chunk_size=chunk_size,
                has_more=chunk.has_more,
            )
            self.run.state = dict(state)
            self.session.commit()

            if not chunk.has_more:
                # the line-count estimate becomes the real number of valid rows
                self.run.total_products = self.run.processed_products
                self.run.total_batches = self.run.current_batch
                self.session.commit()
                return True

            chunk_index = chunk.next_chunk_index
            if self._budget_spent():
                self._set_stage("paused", f"Paused before chunk {chunk_index + 1}; resume to continue")
                return False

    def _run_snapshot(self) -> None:
        self._checkpoint()
        self._set_stage("fetching", "Downloading product feed")
        text = self.client.download()

        self._set_stage("parsing", "Parsing product feed")
        stats = ParseStats()
        rows = parse_csv(text, max_rows=self.config.parse_max_rows, stats=stats)
        products = self.policy.select(self._normalize(rows, stats))

        self.run.total_products = len(products)
        self.run.total_batches = math.ceil(len(products) / self.config.batch_size)
        self.session.commit()

        self._upsert_batches(products)

    def _normalize(self, rows: List[RawFeedRow], stats: ParseStats) -> List[NormalizedProduct]:
        valid = [row for row in rows if has_required_fields(row)]
        logger.info(
            f"[SYNC] Parsed {stats.parsed} of {stats.data_lines} lines "
            f"({stats.malformed} malformed), {len(valid)} rows with id and title"
        )
        synced_at = datetime.now(timezone.utc)
        return [
            normalize_row(
                row,
                self.categories,
                seo_template=self.config.seo_title_template,
                description_prefix=self.config.seo_description_prefix,
                default_currency=self.config.default_currency,
                append_full_id=self.config.slug_append_full_id,
                synced_at=synced_at,
            )
            for row in valid
        ]

    def _upsert_batches(self, products: List[NormalizedProduct]) -> None:
        batch_size = self.config.batch_size

        for offset in range(0, len(products), batch_size):
            self._checkpoint()
            batch = products[offset:offset + batch_size]
            batch_number = self.run.current_batch + 1
            self.run.stage = "upserting"

            try:
                result = upsert_products(self.session, batch)
                self.session.flush()
            except SQLAlchemyError as e:
                self.session.rollback()
                failure = BatchUpsertFailure(
                    f"Batch {batch_number} rejected by the store: {e}",
                    batch_number=batch_number,
                    size=len(batch),
                )
                logger.error(f"[SYNC] {failure.message}")
                self.run.failed_batches += 1
                result = None

            self.run.current_batch = batch_number
            self.run.processed_products += result.upserted if result is not None else len(batch)
            if self.run.total_batches < batch_number:
                self.run.total_batches = batch_number
            if result is not None:
                self.run.products_added += result.added
                self.run.products_updated += result.updated

            is_last = offset + batch_size >= len(products)
            if batch_number % self.config.progress_every == 0 or is_last:
                self._report_progress(batch_number)
            self.session.commit()

    def _report_progress(self, batch_number: int) -> None:
        seconds = estimate_remaining(
            self.run.processed_products,
            self.run.total_products,
            self.clock() - self.start_time,
            processed_before=self.processed_at_start,
        )
        self.run.estimated_remaining = format_eta(seconds)
        self.run.stage_message = (
            f"Batch {batch_number}/{max(self.run.total_batches, batch_number)}: "
            f"{self.run.processed_products}/{self.run.total_products} products"
        )
        logger.info(
            f"[SYNC] {self.run.stage_message} "
            f"(added={self.run.products_added} updated={self.run.products_updated} eta={self.run.estimated_remaining})"
        )

    def _link_and_reconcile(self) -> None:
        self._checkpoint()
        self._set_stage("linking", "Linking size variants")
        linked = link_variants(self.session)

        if self.policy.deactivates_missing and self.config.deactivate_missing and not self.run.failed_batches:
            self.run.products_removed += deactivate_missing(self.session, self.run.started_at)
        refresh_counts(self.session)
        self.run.stage_message = f"Linked {linked} variants"
        self.session.commit()
