"""End-to-end sync runs over a mocked feed and an SQLite store."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from tenacity import wait_none

from kortingdeal.feed.client import FeedClient
from kortingdeal.models import FeedSettings, Product
from kortingdeal.normalization import DEFAULT_DESCRIPTION_PREFIX, DEFAULT_SEO_TEMPLATE, normalize_row
from kortingdeal.services import feed_sync_handler as handler_module
from kortingdeal.services.feed_config import FeedSyncConfig
from kortingdeal.services.feed_sync_handler import FeedSyncHandler
from kortingdeal.services.product_store import category_index, upsert_products
from kortingdeal.services.sync_runs import create_run, finalize_run
from tests.feeds import build_feed, csv_line, feed_row, gzip_feed

FEED_URL = "https://productdata.awin.com/datafeed/download/apikey/test/fid/1/"


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(FeedClient._send.retry, "wait", wait_none())


def _config(**changes) -> FeedSyncConfig:
    base = FeedSyncConfig(
        feed_url=FEED_URL,
        seo_title_template=DEFAULT_SEO_TEMPLATE,
        seo_description_prefix=DEFAULT_DESCRIPTION_PREFIX,
    )
    return base.with_overrides(**changes)


def _client(body: bytes, status: int = 200) -> FeedClient:
    return FeedClient(FEED_URL, transport=httpx.MockTransport(lambda request: httpx.Response(status, content=body)))


def _many_rows(count: int) -> bytes:
    rows = [feed_row(f"P{i:04d}", f"Product {i}", price="10", rrp="20") for i in range(count)]
    return gzip_feed(build_feed(rows))


def _product_count(session) -> int:
    return session.scalar(select(func.count(Product.id)))


def _run_handler(session, body, policy="full_pass", config=None, **kwargs):
    run = create_run(session, selection_policy=policy)
    session.commit()
    handler = FeedSyncHandler(session=session, run=run, client=_client(body), config=config or _config(), **kwargs)
    return handler.sync()


@pytest.mark.integration
class TestHappyPath:
    def test_three_row_feed(self, db_session):
        """Two valid rows are stored and the malformed one is skipped."""
        malformed = csv_line(["P3", "Kapot", "te weinig velden"])
        text = build_feed(
            [
                feed_row("P1", "Koptelefoon", price="50.00", rrp="100.00"),
                feed_row("P2", "Tent", price="25.00", rrp=""),
            ],
            extra_lines=[malformed],
        )
        run = _run_handler(db_session, gzip_feed(text))

        assert run.status == "completed"
        assert run.stage == "completed"
        assert run.products_added == 2
        assert run.products_updated == 0
        assert run.failed_batches == 0
        assert run.completed_at is not None
        assert _product_count(db_session) == 2

        products = {p.awin_product_id: p for p in db_session.scalars(select(Product)).unique().all()}
        assert products["P1"].is_featured is True
        assert products["P1"].discount_percentage == 50
        assert products["P2"].is_featured is False
        assert products["P2"].discount_percentage is None

    def test_second_sync_counts_updates(self, db_session):
        body = _many_rows(5)
        _run_handler(db_session, body)
        run = _run_handler(db_session, body)
        assert run.status == "completed"
        assert run.products_added == 0
        assert run.products_updated == 5

    def test_progress_counters(self, db_session):
        run = _run_handler(db_session, _many_rows(250), config=_config(batch_size=100))
        assert run.current_batch == 3
        assert run.total_batches == 3
        assert run.processed_products == 250
        assert run.total_products == 250

    def test_duplicate_ids_counted_once(self, db_session):
        rows = [feed_row("P1", "Tent"), feed_row("P1", "Tent groot"), feed_row("P2", "Stoel")]
        run = _run_handler(db_session, gzip_feed(build_feed(rows)))
        assert run.status == "completed"
        assert run.processed_products == 2
        assert run.total_products == 2
        assert run.products_added == 2

    def test_last_sync_timestamp_recorded(self, db_session):
        db_session.add(FeedSettings(feed_url=FEED_URL))
        db_session.commit()
        _run_handler(db_session, _many_rows(1))
        assert db_session.scalars(select(FeedSettings)).one().last_sync_at is not None

    def test_variants_linked_after_upsert(self, db_session):
        rows = [
            feed_row("V1", "Bikini Maat S", brand_name="Sunny"),
            feed_row("V2", "Bikini Maat M", brand_name="Sunny"),
        ]
        _run_handler(db_session, gzip_feed(build_feed(rows)))
        db_session.expire_all()
        parents = db_session.scalars(select(Product.parent_product_id)).all()
        assert sum(1 for p in parents if p is not None) == 1


@pytest.mark.integration
class TestCancellation:
    def test_cancel_after_second_batch(self, db_session):
        """A cancel requested after batch 2 stops before batch 3 starts."""
        run = create_run(db_session)
        db_session.commit()
        handler = FeedSyncHandler(
            session=db_session,
            run=run,
            client=_client(_many_rows(500)),
            config=_config(batch_size=100),
            should_cancel=lambda: run.current_batch >= 2,
        )
        handler.sync()

        assert run.status == "cancelled"
        assert run.processed_products == 200
        assert run.current_batch == 2
        assert _product_count(db_session) == 200

    def test_cancel_flag_in_store(self, db_session):
        run = create_run(db_session)
        run.cancel_requested = True
        db_session.commit()
        handler = FeedSyncHandler(session=db_session, run=run, client=_client(_many_rows(10)), config=_config())
        handler.sync()
        assert run.status == "cancelled"
        assert run.processed_products == 0


@pytest.mark.integration
class TestResume:
    def test_time_budget_pauses_and_resume_finishes(self, db_session):
        run = create_run(db_session)
        db_session.commit()
        first = FeedSyncHandler(
            session=db_session,
            run=run,
            client=_client(_many_rows(5)),
            config=_config(chunk_size=2, batch_size=1),
            time_budget_seconds=0,
        )
        first.sync()
        assert run.status == "started"
        assert run.stage == "paused"
        assert run.state["next_chunk_index"] == 1
        assert run.processed_products == 2

        # a fresh invocation with a new client picks up the stored cursor
        second = FeedSyncHandler(
            session=db_session,
            run=run,
            client=_client(_many_rows(5)),
            config=_config(chunk_size=10, batch_size=1),
        )
        second.sync()
        assert run.status == "completed"
        assert run.processed_products == 5
        assert run.products_added == 5
        assert _product_count(db_session) == 5


@pytest.mark.integration
class TestReconciliation:
    def _seed_old_product(self, session):
        old = datetime.now(timezone.utc) - timedelta(days=2)
        product = normalize_row(feed_row("GONE", "Verdwenen"), category_index(session), synced_at=old)
        upsert_products(session, [product])
        session.commit()

    def _gone(self, session) -> Product:
        session.expire_all()
        return session.scalars(select(Product).where(Product.awin_product_id == "GONE")).unique().one()

    def test_full_pass_deactivates_missing(self, db_session):
        self._seed_old_product(db_session)
        run = _run_handler(db_session, _many_rows(3))
        assert run.products_removed == 1
        assert self._gone(db_session).is_active is False

    def test_sampled_run_keeps_missing(self, db_session):
        self._seed_old_product(db_session)
        run = _run_handler(db_session, _many_rows(3), policy="top_discount")
        assert run.status == "completed"
        assert run.products_removed == 0
        assert self._gone(db_session).is_active is True

    def test_disabled_by_config(self, db_session):
        self._seed_old_product(db_session)
        run = _run_handler(db_session, _many_rows(3), config=_config(deactivate_missing=False))
        assert run.products_removed == 0


@pytest.mark.integration
class TestSnapshotPolicies:
    def test_top_discount_keeps_deepest_discounts(self, db_session):
        rows = [
            feed_row("A", "A", price="90", rrp="100"),
            feed_row("B", "B", price="10", rrp="100"),
            feed_row("C", "C", price="50", rrp="100"),
            feed_row("D", "D", price="100", rrp=""),
        ]
        run = _run_handler(
            db_session,
            gzip_feed(build_feed(rows)),
            policy="top_discount",
            config=_config(selection_limit=2),
        )
        assert run.status == "completed"
        assert run.total_products == 2
        stored = set(db_session.scalars(select(Product.awin_product_id)).all())
        assert stored == {"B", "C"}

    def test_parse_cap(self, db_session):
        run = _run_handler(db_session, _many_rows(20), policy="random_sample", config=_config(parse_max_rows=5))
        assert run.processed_products == 5


@pytest.mark.integration
class TestFailures:
    def test_feed_unavailable_marks_run_failed(self, db_session):
        run = create_run(db_session)
        db_session.commit()
        FeedSyncHandler(session=db_session, run=run, client=_client(b"forbidden", status=403), config=_config()).sync()
        assert run.status == "failed"
        assert run.error_message == "Feed source returned HTTP 403"

    def test_undecodable_feed(self, db_session):
        run = _run_handler(db_session, b"<html>login</html>")
        assert run.status == "failed"
        assert "feed id" in run.error_message

    def test_missing_feed_url(self, db_session):
        config = FeedSyncConfig(
            feed_url="",
            seo_title_template=DEFAULT_SEO_TEMPLATE,
            seo_description_prefix=DEFAULT_DESCRIPTION_PREFIX,
        )
        run = _run_handler(db_session, _many_rows(1), config=config)
        assert run.status == "failed"
        assert run.error_message == "Feed URL not configured"

    def test_rejected_batch_is_skipped(self, db_session, monkeypatch):
        calls = {"n": 0}
        real_upsert = handler_module.upsert_products

        def flaky_upsert(session, products):
            calls["n"] += 1
            if calls["n"] == 2:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return real_upsert(session, products)

        monkeypatch.setattr(handler_module, "upsert_products", flaky_upsert)
        run = _run_handler(db_session, _many_rows(30), config=_config(batch_size=10))

        assert run.status == "completed"
        assert run.failed_batches == 1
        assert run.current_batch == 3
        assert run.products_added == 20
        assert _product_count(db_session) == 20

    def test_finalized_only_once(self, db_session):
        run = _run_handler(db_session, _many_rows(1))
        assert finalize_run(db_session, run, "failed", error_message="late") is False
        assert run.status == "completed"
        assert run.error_message is None
