from typing import Optional, List, Callable
from datetime import datetime

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.id_utils import generate_batch_id
from utils.time_utils import utc_now

# Database
from database.listing_db import ListingDB

# Services
from services.extraction_service import ExtractionService
from services.listing_store_service import ListingStoreService

# Models
from models.incoming_message_data import IncomingMessageData
from models.processing_job_data import ProcessingJobData
from models.response.batch_result_response import BatchResult

OUTCOME_LISTINGS = "listings"
OUTCOME_NO_LISTINGS = "no_listings"
OUTCOME_EMPTY_TEXT = "empty_text"


class WorkerService:
    """
    Claim-based batch worker.

    Messages are claimed one at a time with an atomic find-and-update, so
    concurrent runs never own the same message. Each claimed message is then
    processed sequentially; a failure is recorded on that message and never
    aborts the rest of the batch.
    """

    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        listing_db: ListingDB,
        extraction_service: ExtractionService,
        listing_store_service: Optional[ListingStoreService] = None,
        now_provider: Callable[[], datetime] = utc_now
    ):
        self.log_util = log_util
        self.listing_db = listing_db
        self.extraction_service = extraction_service
        self.listing_store_service = listing_store_service or ListingStoreService(log_util, listing_db)
        self.now_provider = now_provider

        # Defaults
        self.default_batch_size = int(environment_utils.get_env_variable("WORKER_BATCH_SIZE"))
        self.default_max_attempts = int(environment_utils.get_env_variable("WORKER_MAX_ATTEMPTS"))
        self.default_claim_timeout_seconds = int(environment_utils.get_env_variable("WORKER_CLAIM_TIMEOUT_SECONDS"))
        self.max_listings = int(environment_utils.get_env_variable("EXTRACTION_MAX_LISTINGS"))

    async def claim_pending_messages(self, batch_id: str, batch_size: int, max_attempts: int,
                                     claim_timeout_seconds: int) -> List[IncomingMessageData]:
        """
        Claim up to batch_size eligible messages, oldest first.

        Raises:
            StoreException: The store is unreachable; the batch is aborted
        """
        claimed: List[IncomingMessageData] = []
        now = self.now_provider()

        while len(claimed) < batch_size:
            message = await self.listing_db.claim_next_message(
                batch_id=batch_id,
                now=now,
                max_attempts=max_attempts,
                claim_timeout_seconds=claim_timeout_seconds
            )
            if message is None:
                break
            claimed.append(message)

        return claimed

    async def process_pending_batch(
        self,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        claim_timeout_seconds: Optional[int] = None
    ) -> BatchResult:
        batch_size = batch_size or self.default_batch_size
        max_attempts = max_attempts or self.default_max_attempts
        claim_timeout_seconds = claim_timeout_seconds or self.default_claim_timeout_seconds

        result = BatchResult(batch_id=generate_batch_id())

        claimed = await self.claim_pending_messages(result.batch_id, batch_size, max_attempts, claim_timeout_seconds)
        result.claimed = len(claimed)

        if claimed:
            self.log_util.info(
                service_name="WorkerService",
                message=f"Batch {result.batch_id} claimed {len(claimed)} message(s)"
            )
            job = ProcessingJobData(
                batch_id=result.batch_id,
                batch_size=batch_size,
                message_ids=[message.id for message in claimed],
                claimed=len(claimed),
                started_at=self.now_provider()
            )
            await self._save_job(job)

            for message in claimed:
                await self._process_claimed_message(message, result, max_attempts)

            job = job.model_copy(update={
                **result.model_dump(include={
                    "processed", "failed", "skipped", "listings_created", "listings_updated",
                    "prompt_tokens", "completion_tokens", "total_tokens"
                }),
                "status": "completed",
                "completed_at": self.now_provider()
            })
            await self._save_job(job)

        result.remaining_pending = await self.listing_db.count_pending_messages()

        self.log_util.info(
            service_name="WorkerService",
            message=(
                f"Batch {result.batch_id} done: claimed={result.claimed}, processed={result.processed}, "
                f"failed={result.failed}, skipped={result.skipped}, remaining_pending={result.remaining_pending}"
            )
        )
        return result

    async def _process_claimed_message(self, message: IncomingMessageData, result: BatchResult, max_attempts: int) -> None:
        batch_id = result.batch_id
        message_label = message.ingest.message_id

        try:
            still_owned = await self.listing_db.refresh_heartbeat(message.id, batch_id, self.now_provider())
            if not still_owned:
                self._log_lost_claim(message_label, "before processing")
                return

            if not message.has_text():
                recorded = await self.listing_db.mark_message_processed(
                    message.id, batch_id, self.now_provider(), outcome=OUTCOME_EMPTY_TEXT, listing_ids=[]
                )
                if not recorded:
                    self._log_lost_claim(message_label, "while recording its result")
                    return
                result.processed += 1
                result.skipped += 1
                return

            extraction = await self.extraction_service.extract(
                message.message.text,
                message_id=message_label,
                max_listings=self.max_listings
            )

            listing_ids: List[str] = []
            upsert_outcomes: List[str] = []
            for ordinal, candidate in enumerate(extraction.listings, start=1):
                upsert_outcomes.append(await self.listing_store_service.upsert_listing(message, candidate, ordinal))
                listing_ids.append(self.listing_store_service.listing_id_for(message, ordinal))

            recorded = await self.listing_db.mark_message_processed(
                message.id,
                batch_id,
                self.now_provider(),
                outcome=OUTCOME_LISTINGS if listing_ids else OUTCOME_NO_LISTINGS,
                listing_ids=listing_ids,
                prompt_tokens=extraction.prompt_tokens,
                completion_tokens=extraction.completion_tokens,
                total_tokens=extraction.total_tokens
            )
            if not recorded:
                # Another batch reclaimed the message and reports it
                self._log_lost_claim(message_label, "while recording its result")
                return

            result.listings_created += upsert_outcomes.count("created")
            result.listings_updated += upsert_outcomes.count("updated")
            result.processed += 1
            result.prompt_tokens += extraction.prompt_tokens
            result.completion_tokens += extraction.completion_tokens
            result.total_tokens += extraction.total_tokens
            if not listing_ids:
                result.skipped += 1

            self.log_util.info(
                service_name="WorkerService",
                message=f"Message {message_label} processed: listings={len(listing_ids)}, tokens={extraction.total_tokens}"
            )
        except Exception as e:
            if await self._mark_failed(message, batch_id, e, max_attempts):
                result.failed += 1

    def _log_lost_claim(self, message_label: str, stage: str) -> None:
        self.log_util.warning(
            service_name="WorkerService",
            message=f"Claim on message {message_label} lost {stage}, skipping"
        )

    async def _mark_failed(self, message: IncomingMessageData, batch_id: str, error: Exception, max_attempts: int) -> bool:
        """
        Returns:
            False if the claim was lost to another batch, True otherwise
        """
        terminal = message.processing.attempts >= max_attempts
        self.log_util.error(
            service_name="WorkerService",
            message=(
                f"Failed to process message {message.ingest.message_id} (attempt {message.processing.attempts}/"
                f"{max_attempts}, next status {'failed' if terminal else 'pending'}): {str(error)}"
            )
        )
        try:
            recorded = await self.listing_db.mark_message_failed(
                message.id, batch_id, self.now_provider(), error=str(error), terminal=terminal
            )
        except Exception as e:
            # The claim times out and the message is reclaimed later
            self.log_util.error(
                service_name="WorkerService",
                message=f"Could not record failure of message {message.ingest.message_id}: {str(e)}"
            )
            return True

        if not recorded:
            self._log_lost_claim(message.ingest.message_id, "while recording its failure")
        return recorded

    async def _save_job(self, job: ProcessingJobData) -> None:
        try:
            await self.listing_db.save_processing_job(job)
        except Exception as e:
            self.log_util.warning(
                service_name="WorkerService",
                message=f"Could not write processing job audit for batch {job.batch_id}: {str(e)}"
            )
