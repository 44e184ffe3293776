"""Tests for the claim-based worker."""
import asyncio
import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from conftest import make_text_message, make_whatsapp_payload
from exceptions.pipeline_exception import ExtractionException, StoreException
from models.extraction_result import ExtractionResult
from models.property_listing_data import ExtractedListing, ListingProperty
from models.response.batch_result_response import BatchResult
from services.extraction_service import ExtractionService
from services.intake_service import IntakeService
from services.worker_service import WorkerService


class MutableClock:

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def one_listing_result(tokens=100):
    return ExtractionResult(
        listings=[ExtractedListing(property=ListingProperty(bedrooms=2))],
        prompt_tokens=tokens,
        completion_tokens=0,
        total_tokens=tokens
    )


@pytest.fixture
def clock():
    return MutableClock(datetime(2024, 6, 3, 12, 0, 0))


@pytest.fixture
def extraction_service():
    service = MagicMock(spec=ExtractionService)
    service.extract = AsyncMock(return_value=one_listing_result())
    return service


@pytest.fixture
def worker(log_util, environment_utils, listing_db, extraction_service, clock):
    return WorkerService(
        log_util=log_util,
        environment_utils=environment_utils,
        listing_db=listing_db,
        extraction_service=extraction_service,
        now_provider=clock
    )


@pytest.fixture
def intake(log_util, listing_db, clock):
    return IntakeService(log_util=log_util, listing_db=listing_db, now_provider=clock)


async def ingest(intake, clock, *messages):
    """Store messages one delivery at a time so first_seen_at is strictly increasing."""
    for message in messages:
        await intake.store_incoming_messages(make_whatsapp_payload([message]))
        clock.advance(1)


async def processing_of(incoming_collection, dedupe_key):
    document = await incoming_collection.find_one({"ingest.dedupe_key": dedupe_key})
    return document["processing"]


class TestScenarios:

    @pytest.mark.asyncio
    async def test_webhook_to_listing_end_to_end(self, log_util, environment_utils, listing_db, intake, clock,
                                                 incoming_collection, properties_collection):
        model_output = {"listings": [{
            "deal": {"category": "rent", "price": {"amount": "₦1.2m", "period": "per_year"}},
            "property": {"type": "flat", "bedrooms": 2},
            "address": {"area": "Lekki"},
        }]}

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={
                "choices": [{"message": {"content": json.dumps(model_output)}}],
                "usage": {"prompt_tokens": 300, "completion_tokens": 90, "total_tokens": 390},
            })

        worker = WorkerService(
            log_util=log_util,
            environment_utils=environment_utils,
            listing_db=listing_db,
            extraction_service=ExtractionService(log_util, environment_utils, transport=httpx.MockTransport(handler)),
            now_provider=clock
        )
        await ingest(intake, clock, make_text_message())

        result = await worker.process_pending_batch(batch_size=5)

        assert (result.claimed, result.processed, result.failed, result.skipped) == (1, 1, 0, 0)
        assert result.listings_created == 1
        assert result.total_tokens == 390
        assert result.remaining_pending == 0

        processing = await processing_of(incoming_collection, "wamid.TEST001")
        assert processing["status"] == "processed"
        assert processing["attempts"] == 1
        assert processing["outcome"] == "listings"
        assert processing["listing_ids"] == ["listing_wamid.TEST001_1"]
        assert processing["total_tokens"] == 390

        listing = await properties_collection.find_one({"_id": "listing_wamid.TEST001_1"})
        assert listing["property"]["bedrooms"] == 2
        assert listing["address"]["area"] == "Lekki"
        assert listing["deal"]["price"]["amount"] == 1200000
        assert listing["deal"]["price"]["currency"] == "NGN"
        assert listing["ingest"]["dedupe_key"] == "whatsapp:wamid.TEST001:1"

    @pytest.mark.asyncio
    async def test_two_failures_then_success_ends_processed(self, worker, intake, clock, extraction_service,
                                                            incoming_collection):
        extraction_service.extract.side_effect = [
            ExtractionException("model timeout"),
            ExtractionException("unparsable output"),
            one_listing_result(),
        ]
        await ingest(intake, clock, make_text_message())

        first = await worker.process_pending_batch()
        second = await worker.process_pending_batch()
        processing = await processing_of(incoming_collection, "wamid.TEST001")
        assert processing["status"] == "pending"
        assert processing["last_error"] == "unparsable output"
        assert processing["heartbeat_at"] is None
        assert processing["claimed_at"] is None

        third = await worker.process_pending_batch()

        assert (first.failed, second.failed, third.processed) == (1, 1, 1)
        processing = await processing_of(incoming_collection, "wamid.TEST001")
        assert processing["status"] == "processed"
        assert processing["attempts"] == 3
        assert processing["last_error"] is None

    @pytest.mark.asyncio
    async def test_exhausted_attempts_end_failed_and_are_never_reclaimed(self, worker, intake, clock,
                                                                         extraction_service, incoming_collection):
        extraction_service.extract.side_effect = ExtractionException("model down")
        await ingest(intake, clock, make_text_message())

        for _ in range(3):
            result = await worker.process_pending_batch(max_attempts=3)
            assert result.failed == 1

        processing = await processing_of(incoming_collection, "wamid.TEST001")
        assert processing["status"] == "failed"
        assert processing["attempts"] == 3
        assert processing["last_error"] == "model down"

        clock.advance(3600)
        result = await worker.process_pending_batch(max_attempts=3)
        assert result.claimed == 0
        assert extraction_service.extract.await_count == 3


class TestClaiming:

    @pytest.mark.asyncio
    async def test_claims_oldest_first_up_to_batch_size(self, worker, intake, clock, extraction_service):
        await ingest(intake, clock, *[make_text_message(message_id=f"wamid.{i}", body=f"flat {i}") for i in range(4)])

        result = await worker.process_pending_batch(batch_size=3)

        assert result.claimed == 3
        assert result.remaining_pending == 1
        texts = [call.args[0] for call in extraction_service.extract.await_args_list]
        assert texts == ["flat 0", "flat 1", "flat 2"]

    @pytest.mark.asyncio
    async def test_concurrent_batches_never_share_a_message(self, log_util, environment_utils, listing_db, intake,
                                                            clock, incoming_collection):
        await ingest(intake, clock, *[make_text_message(message_id=f"wamid.{i}", body=f"flat {i}") for i in range(6)])

        async def slow_extract(text, message_id, max_listings=None):
            await asyncio.sleep(0)
            return one_listing_result()

        def make_worker():
            extraction = MagicMock(spec=ExtractionService)
            extraction.extract = AsyncMock(side_effect=slow_extract)
            return WorkerService(log_util, environment_utils, listing_db, extraction, now_provider=clock)

        first, second = await asyncio.gather(
            make_worker().process_pending_batch(batch_size=5),
            make_worker().process_pending_batch(batch_size=5)
        )

        assert first.claimed + second.claimed == 6
        assert first.processed + second.processed == 6
        async for document in incoming_collection.find({}):
            assert document["processing"]["attempts"] == 1
            assert document["processing"]["status"] == "processed"

    @pytest.mark.asyncio
    async def test_abandoned_claim_is_reclaimed_only_after_timeout(self, worker, listing_db, intake, clock,
                                                                   incoming_collection):
        await ingest(intake, clock, make_text_message())
        crashed = await listing_db.claim_next_message("crashed-batch", clock.now, max_attempts=3,
                                                      claim_timeout_seconds=300)
        assert crashed.processing.attempts == 1

        clock.advance(120)
        early = await worker.process_pending_batch(claim_timeout_seconds=300)
        assert early.claimed == 0

        clock.advance(300)
        late = await worker.process_pending_batch(claim_timeout_seconds=300)
        assert late.claimed == 1
        assert late.processed == 1

        processing = await processing_of(incoming_collection, "wamid.TEST001")
        assert processing["attempts"] == 2
        assert processing["worker_batch_id"] == late.batch_id

    @pytest.mark.asyncio
    async def test_abandoned_claim_at_attempt_cap_is_not_reclaimed(self, worker, listing_db, intake, clock):
        await ingest(intake, clock, make_text_message())
        for _ in range(3):
            await listing_db.claim_next_message("crashed-batch", clock.now, max_attempts=3,
                                                claim_timeout_seconds=0)
            clock.advance(1)

        clock.advance(3600)
        result = await worker.process_pending_batch(max_attempts=3)

        assert result.claimed == 0

    @pytest.mark.asyncio
    async def test_claim_lost_during_extraction_is_counted_once(self, log_util, environment_utils, listing_db,
                                                               worker, intake, clock,
                                                               incoming_collection):
        await ingest(intake, clock, make_text_message())
        reclaimed = {}

        async def slow_extract(text, message_id, max_listings=None):
            clock.advance(400)
            reclaimed["result"] = await worker.process_pending_batch(claim_timeout_seconds=300)
            return one_listing_result()

        slow_extraction = MagicMock(spec=ExtractionService)
        slow_extraction.extract = AsyncMock(side_effect=slow_extract)
        slow_worker = WorkerService(log_util, environment_utils, listing_db, slow_extraction, now_provider=clock)

        stale = await slow_worker.process_pending_batch(claim_timeout_seconds=300)
        fresh = reclaimed["result"]

        assert (stale.claimed, fresh.claimed) == (1, 1)
        assert (stale.processed, fresh.processed) == (0, 1)
        assert (stale.listings_created, stale.total_tokens) == (0, 0)
        assert stale.processed + fresh.processed == 1
        processing = await processing_of(incoming_collection, "wamid.TEST001")
        assert processing["status"] == "processed"
        assert processing["worker_batch_id"] == fresh.batch_id
        assert processing["attempts"] == 2

    @pytest.mark.asyncio
    async def test_failure_after_lost_claim_is_not_counted(self, log_util, environment_utils, listing_db, worker,
                                                           intake, clock, incoming_collection):
        await ingest(intake, clock, make_text_message())
        reclaimed = {}

        async def slow_failing_extract(text, message_id, max_listings=None):
            clock.advance(400)
            reclaimed["result"] = await worker.process_pending_batch(claim_timeout_seconds=300)
            raise ExtractionException("model timeout")

        slow_extraction = MagicMock(spec=ExtractionService)
        slow_extraction.extract = AsyncMock(side_effect=slow_failing_extract)
        slow_worker = WorkerService(log_util, environment_utils, listing_db, slow_extraction, now_provider=clock)

        stale = await slow_worker.process_pending_batch(claim_timeout_seconds=300)

        assert (stale.processed, stale.failed) == (0, 0)
        assert reclaimed["result"].processed == 1
        processing = await processing_of(incoming_collection, "wamid.TEST001")
        assert processing["status"] == "processed"
        assert processing["last_error"] is None

    @pytest.mark.asyncio
    async def test_lost_claim_is_skipped_without_writes(self, worker, listing_db, intake, clock,
                                                        extraction_service, incoming_collection):
        await ingest(intake, clock, make_text_message())
        stolen = await listing_db.claim_next_message("other-batch", clock.now, max_attempts=3,
                                                     claim_timeout_seconds=300)
        result = BatchResult(batch_id="stale-batch")

        await worker._process_claimed_message(stolen, result, max_attempts=3)

        extraction_service.extract.assert_not_awaited()
        assert (result.processed, result.failed) == (0, 0)
        processing = await processing_of(incoming_collection, "wamid.TEST001")
        assert processing["status"] == "processing"
        assert processing["worker_batch_id"] == "other-batch"

    @pytest.mark.asyncio
    async def test_claim_store_failure_aborts_batch(self, worker, listing_db):
        listing_db.claim_next_message = AsyncMock(side_effect=StoreException("Database connection error", 503))

        with pytest.raises(StoreException):
            await worker.process_pending_batch()


class TestPerMessageOutcomes:

    @pytest.mark.asyncio
    async def test_empty_text_is_processed_without_model_call(self, worker, intake, clock, extraction_service,
                                                              incoming_collection):
        await ingest(intake, clock, make_text_message(body="   "))

        result = await worker.process_pending_batch()

        extraction_service.extract.assert_not_awaited()
        assert (result.processed, result.skipped) == (1, 1)
        processing = await processing_of(incoming_collection, "wamid.TEST001")
        assert processing["status"] == "processed"
        assert processing["outcome"] == "empty_text"
        assert processing["listing_count"] == 0

    @pytest.mark.asyncio
    async def test_zero_listings_is_processed_and_marked(self, worker, intake, clock, extraction_service,
                                                         incoming_collection):
        extraction_service.extract.return_value = ExtractionResult(prompt_tokens=50, total_tokens=50)
        await ingest(intake, clock, make_text_message(body="Good morning group"))

        result = await worker.process_pending_batch()

        assert (result.processed, result.skipped, result.total_tokens) == (1, 1, 50)
        processing = await processing_of(incoming_collection, "wamid.TEST001")
        assert processing["status"] == "processed"
        assert processing["outcome"] == "no_listings"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_siblings(self, worker, intake, clock, extraction_service,
                                                       incoming_collection):
        extraction_service.extract.side_effect = [
            one_listing_result(),
            ExtractionException("bad output"),
            one_listing_result(),
        ]
        await ingest(intake, clock, *[make_text_message(message_id=f"wamid.{i}", body=f"flat {i}") for i in range(3)])

        result = await worker.process_pending_batch()

        assert (result.claimed, result.processed, result.failed) == (3, 2, 1)
        assert result.listings_created == 2
        assert (await processing_of(incoming_collection, "wamid.1"))["status"] == "pending"
        assert result.remaining_pending == 1

    @pytest.mark.asyncio
    async def test_reprocessing_same_message_updates_listings(self, worker, intake, clock, incoming_collection,
                                                              properties_collection):
        await ingest(intake, clock, make_text_message())
        first = await worker.process_pending_batch()
        await incoming_collection.update_one(
            {"ingest.dedupe_key": "wamid.TEST001"},
            {"$set": {"processing.status": "pending"}}
        )

        second = await worker.process_pending_batch()

        assert (first.listings_created, second.listings_updated) == (1, 1)
        assert await properties_collection.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_batch_writes_processing_job_audit(self, worker, intake, clock, mongo_client, test_env):
        await ingest(intake, clock, make_text_message())

        result = await worker.process_pending_batch()

        jobs = mongo_client[test_env["MONGO_DB_NAME"]]["processing_jobs"]
        job = await jobs.find_one({"batch_id": result.batch_id})
        assert job["status"] == "completed"
        assert job["claimed"] == 1
        assert job["processed"] == 1
        assert job["completed_at"] is not None

    @pytest.mark.asyncio
    async def test_audit_write_failure_is_ignored(self, worker, listing_db, intake, clock):
        listing_db.save_processing_job = AsyncMock(side_effect=StoreException("Database error: boom"))
        await ingest(intake, clock, make_text_message())

        result = await worker.process_pending_batch()

        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_empty_queue_returns_zero_counts(self, worker):
        result = await worker.process_pending_batch()

        assert result.claimed == 0
        assert result.remaining_pending == 0
        assert result.batch_id
