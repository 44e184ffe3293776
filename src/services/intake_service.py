from typing import Optional, Any, Callable
from datetime import datetime

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import utc_now

# Database
from database.listing_db import ListingDB

# Services
from services.whatsapp_message_adapter import WhatsAppMessageAdapter
from services.worker_trigger_service import WorkerTriggerService

# Models
from models.response.webhook_intake_response import IntakeResult


class IntakeService:
    """
    Stores inbound WhatsApp messages exactly once per dedupe key and nudges
    the worker when something new (or redelivered) arrives.
    """

    def __init__(
        self,
        log_util: LogUtil,
        listing_db: ListingDB,
        worker_trigger_service: Optional[WorkerTriggerService] = None,
        message_adapter: Optional[WhatsAppMessageAdapter] = None,
        now_provider: Callable[[], datetime] = utc_now
    ):
        self.log_util = log_util
        self.listing_db = listing_db
        self.worker_trigger_service = worker_trigger_service
        self.message_adapter = message_adapter or WhatsAppMessageAdapter(log_util)
        self.now_provider = now_provider

    async def store_incoming_messages(self, payload: Any) -> IntakeResult:
        """
        Persist every supported message of a webhook delivery.

        Raises:
            ValidationException: Malformed envelope, nothing is stored
            StoreException: Database failure
        """
        now = self.now_provider()
        messages, skipped = self.message_adapter.parse_payload(payload, now=now)
        result = IntakeResult(skipped=skipped)

        if not messages:
            self.log_util.info(
                service_name="IntakeService",
                message="No storable WhatsApp messages detected in webhook payload"
            )
            return result

        for message in messages:
            outcome = await self.listing_db.upsert_incoming_message(message)
            if outcome == "inserted":
                result.inserted += 1
            else:
                result.updated += 1

        self.log_util.info(
            service_name="IntakeService",
            message=f"Stored WhatsApp webhook: inserted={result.inserted}, updated={result.updated}, skipped={result.skipped}"
        )

        if result.inserted > 0 or result.updated > 0:
            self._notify_worker()

        return result

    def _notify_worker(self) -> None:
        if self.worker_trigger_service is None:
            return
        try:
            self.worker_trigger_service.notify_new_messages()
        except Exception as e:
            self.log_util.error(
                service_name="IntakeService",
                message=f"Failed to trigger worker after WhatsApp intake: {str(e)}"
            )
