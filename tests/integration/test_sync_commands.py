"""Pipeline command dispatch tests."""

import uuid

import httpx
import pytest
from pydantic import BaseModel, TypeAdapter, ValidationError
from sqlalchemy import func, select

from kortingdeal.feed.client import FeedClient
from kortingdeal.models import FeedSettings, Product, SyncRun
from kortingdeal.services import sync_commands
from kortingdeal.services.sync_commands import (
    CancelRun,
    CompleteRun,
    CreateRun,
    FetchChunk,
    LinkVariants,
    PipelineCommand,
    RunNotFound,
    UpdateProgress,
    UpsertBatch,
    dispatch,
)
from kortingdeal.services.sync_runs import RunAlreadyActive, RunFinished
from tests.feeds import build_feed, feed_row, gzip_feed

FEED_URL = "https://productdata.awin.com/datafeed/download/apikey/test/fid/1/"


@pytest.fixture
def feed(db_session, monkeypatch):
    """Serve a five-row feed (two size variants) to the commands."""
    rows = [feed_row(f"P{i}", f"Product {i}", price="40", rrp="100") for i in range(1, 4)]
    rows += [feed_row("V1", "Jurk Maat S", brand_name="Mooi"), feed_row("V2", "Jurk Maat M", brand_name="Mooi")]
    body = gzip_feed(build_feed(rows))
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body))
    monkeypatch.setattr(sync_commands, "FeedClient", lambda url: FeedClient(url, transport=transport))
    db_session.add(FeedSettings(feed_url=FEED_URL))
    db_session.commit()
    return rows


@pytest.mark.unit
class TestCommandParsing:
    def test_discriminated_on_action(self):
        adapter = TypeAdapter(PipelineCommand)
        run_id = uuid.uuid4()
        assert isinstance(adapter.validate_python({"action": "create_run"}), CreateRun)
        command = adapter.validate_python({"action": "fetch_chunk", "run_id": str(run_id), "chunk_index": 2})
        assert isinstance(command, FetchChunk)
        assert command.run_id == run_id
        assert isinstance(adapter.validate_python({"action": "link_variants"}), LinkVariants)

    def test_unknown_action_rejected(self):
        with pytest.raises(ValidationError):
            TypeAdapter(PipelineCommand).validate_python({"action": "drop_tables"})

    def test_negative_chunk_index_rejected(self):
        with pytest.raises(ValidationError):
            FetchChunk(run_id=uuid.uuid4(), chunk_index=-1)

    @pytest.mark.parametrize("stage", ["completed", "failed", "cancelled", "whatever"])
    def test_progress_stage_limited_to_running_stages(self, stage):
        with pytest.raises(ValidationError):
            UpdateProgress(run_id=uuid.uuid4(), stage=stage)

    def test_progress_stage_accepts_paused(self):
        assert UpdateProgress(run_id=uuid.uuid4(), stage="paused").stage == "paused"


@pytest.mark.integration
class TestDispatch:
    def test_step_by_step_sync(self, db_session, feed):
        created = dispatch(db_session, CreateRun())
        run_id = uuid.UUID(created["runId"])

        first = dispatch(db_session, FetchChunk(run_id=run_id, chunk_index=0, chunk_size=3))
        assert first["totalProducts"] == 5
        assert first["hasMore"] is True
        assert first["nextChunkIndex"] == 1
        assert len(first["rows"]) == 3

        result = dispatch(db_session, UpsertBatch(run_id=run_id, rows=first["rows"]))
        assert (result["added"], result["updated"]) == (3, 0)

        second = dispatch(db_session, FetchChunk(run_id=run_id, chunk_index=first["nextChunkIndex"], chunk_size=3))
        assert second["hasMore"] is False
        dispatch(db_session, UpsertBatch(run_id=run_id, rows=second["rows"]))

        progress = dispatch(db_session, UpdateProgress(run_id=run_id, stage_message="Bijna klaar", estimated_remaining="~1 sec"))
        assert progress["processedProducts"] == 5
        assert progress["currentBatch"] == 2
        assert progress["stageMessage"] == "Bijna klaar"

        assert dispatch(db_session, LinkVariants()) == {"linked": 1}

        done = dispatch(db_session, CompleteRun(run_id=run_id, deactivate_missing=True))
        assert done["status"] == "completed"
        assert done["productsAdded"] == 5
        assert db_session.scalar(select(func.count(Product.id))) == 5

    def test_rows_without_id_are_skipped(self, db_session, feed):
        run_id = uuid.UUID(dispatch(db_session, CreateRun())["runId"])
        result = dispatch(
            db_session,
            UpsertBatch(run_id=run_id, rows=[{"aw_product_id": "", "product_name": "x"}, feed_row("Z1", "Tent")]),
        )
        assert result["upserted"] == 1
        assert result["skipped"] == 1

    def test_non_string_values_accepted(self, db_session, feed):
        run_id = uuid.UUID(dispatch(db_session, CreateRun())["runId"])
        row = feed_row("Z2", "Tent")
        row["search_price"] = 12.5
        row["in_stock"] = None
        result = dispatch(db_session, UpsertBatch(run_id=run_id, rows=[row]))
        assert result["added"] == 1

    def test_second_create_refused(self, db_session, feed):
        dispatch(db_session, CreateRun())
        with pytest.raises(RunAlreadyActive):
            dispatch(db_session, CreateRun())

    def test_cancel(self, db_session, feed):
        run_id = uuid.UUID(dispatch(db_session, CreateRun())["runId"])
        result = dispatch(db_session, CancelRun(run_id=run_id))
        assert result["cancelRequested"] is True
        assert db_session.get(SyncRun, run_id).cancel_requested is True

    def test_progress_counters_do_not_go_back(self, db_session, feed):
        run_id = uuid.UUID(dispatch(db_session, CreateRun())["runId"])
        dispatch(db_session, UpdateProgress(run_id=run_id, processed_products=300))
        result = dispatch(db_session, UpdateProgress(run_id=run_id, processed_products=100))
        assert result["processedProducts"] == 300

    def test_unknown_run(self, db_session):
        with pytest.raises(RunNotFound):
            dispatch(db_session, CancelRun(run_id=uuid.uuid4()))

    def test_unknown_command_type(self, db_session):
        class Shutdown(BaseModel):
            action: str = "shutdown"

        with pytest.raises(ValueError):
            dispatch(db_session, Shutdown())

    def test_duplicate_and_skipped_rows_not_counted_as_processed(self, db_session, feed):
        run_id = uuid.UUID(dispatch(db_session, CreateRun())["runId"])
        rows = [feed_row("D1", "Tent"), feed_row("D1", "Tent v2"), {"aw_product_id": "", "product_name": "x"}]
        result = dispatch(db_session, UpsertBatch(run_id=run_id, rows=rows))
        assert result["upserted"] == 1
        assert db_session.get(SyncRun, run_id).processed_products == 1


@pytest.mark.integration
class TestCancelledAndFinishedRuns:
    def test_batch_after_cancel_is_not_upserted(self, db_session, feed):
        run_id = uuid.UUID(dispatch(db_session, CreateRun())["runId"])
        dispatch(db_session, UpsertBatch(run_id=run_id, rows=[feed_row("A1", "Tent")]))
        dispatch(db_session, CancelRun(run_id=run_id))

        result = dispatch(db_session, UpsertBatch(run_id=run_id, rows=[feed_row("A2", "Tent")]))
        assert result["cancelled"] is True
        assert result["status"] == "cancelled"
        assert result["processedProducts"] == 1
        assert db_session.scalar(select(func.count(Product.id))) == 1

    def test_fetch_after_cancel_finalizes_run(self, db_session, feed):
        run_id = uuid.UUID(dispatch(db_session, CreateRun())["runId"])
        dispatch(db_session, CancelRun(run_id=run_id))

        result = dispatch(db_session, FetchChunk(run_id=run_id, chunk_index=0))
        assert result["cancelled"] is True
        assert "rows" not in result
        run = db_session.get(SyncRun, run_id)
        assert run.status == "cancelled"
        assert run.completed_at is not None

    @pytest.mark.parametrize(
        "make_command",
        [
            lambda run_id: UpsertBatch(run_id=run_id, rows=[feed_row("A3", "Tent")]),
            lambda run_id: FetchChunk(run_id=run_id),
            lambda run_id: UpdateProgress(run_id=run_id, processed_products=10),
            lambda run_id: CompleteRun(run_id=run_id),
        ],
    )
    def test_finished_run_refuses_further_steps(self, db_session, feed, make_command):
        run_id = uuid.UUID(dispatch(db_session, CreateRun())["runId"])
        dispatch(db_session, CompleteRun(run_id=run_id, status="cancelled"))

        with pytest.raises(RunFinished):
            dispatch(db_session, make_command(run_id))
        run = db_session.get(SyncRun, run_id)
        assert run.status == "cancelled"
        assert run.processed_products == 0
        assert db_session.scalar(select(func.count(Product.id))) == 0
