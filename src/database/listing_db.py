from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
import urllib.parse
import threading
import asyncio
from typing import Optional, List, Dict, Any, Callable
from datetime import datetime, timedelta
import weakref
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure, DuplicateKeyError

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.pipeline_exception import StoreException

# Models
from models.incoming_message_data import IncomingMessageData
from models.property_listing_data import PropertyListingData
from models.processing_job_data import ProcessingJobData

# Fields refreshed on every redelivery; everything else is written once on insert
REDELIVERY_FIELDS = ("ingest.last_seen_at", "updated_at")


def _flatten(document: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """
    Flatten nested dicts into dotted paths so $setOnInsert and $set can
    address disjoint parts of the same sub-document.
    """
    flat: Dict[str, Any] = {}
    for key, value in document.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict) and value and key != "payload" and key != "metadata":
            flat.update(_flatten(value, prefix=f"{path}."))
        else:
            flat[path] = value
    return flat


"""
Database class for the listing intake pipeline
"""
class ListingDB:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils,
                 client_factory: Optional[Callable[[], Any]] = None):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo connection
        self.mongo_uri = self._build_mongo_uri()
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")

        # Mongo Connection Pool Configs
        self.max_pool_size = 50
        self.min_pool_size = 0  # Create connections on-demand instead of at startup
        self.max_idle_time_ms = 30000
        self.wait_queue_timeout_ms = 10000
        self.connect_timeout_ms = 10000
        self.server_selection_timeout_ms = 10000
        self.socket_timeout_ms = 10000

        # Tests pass a factory returning an in-memory client
        self.client_factory = client_factory or self._create_client

        # MongoDB clients keyed by event loop ID, created lazily on first use
        self._clients = {}  # {loop_id: client_data}

        # Thread-safe initialization lock
        self._client_lock = threading.Lock()

    def _build_mongo_uri(self) -> str:
        mongo_uri = self.environment_utils.get_env_variable("MONGO_URI")
        if mongo_uri:
            return mongo_uri

        host = self.environment_utils.get_env_variable("MONGO_HOST")
        port = int(self.environment_utils.get_env_variable("MONGO_PORT"))
        username = self.environment_utils.get_env_variable("MONGO_USERNAME")
        if not username:
            return f"mongodb://{host}:{port}/"

        username = urllib.parse.quote_plus(username)
        password = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_PASSWORD"))
        auth_source = self.environment_utils.get_env_variable("MONGO_AUTH_SOURCE")
        return f"mongodb://{username}:{password}@{host}:{port}/?authSource={auth_source}"

    def _create_client(self):
        return AsyncIOMotorClient(
            self.mongo_uri,
            maxPoolSize=self.max_pool_size,
            minPoolSize=self.min_pool_size,
            maxIdleTimeMS=self.max_idle_time_ms,
            waitQueueTimeoutMS=self.wait_queue_timeout_ms,
            connectTimeoutMS=self.connect_timeout_ms,
            serverSelectionTimeoutMS=self.server_selection_timeout_ms,
            socketTimeoutMS=self.socket_timeout_ms,
            retryWrites=True,
            retryReads=True
        )

    def _get_client_for_current_loop(self):
        """
        Thread-safe method to get the MongoDB client and collections for the current event loop.
        Each event loop gets its own client instance.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Database methods must be called from an async context.")

        loop_id = id(loop)

        if loop_id in self._clients:
            return self._clients[loop_id]

        with self._client_lock:
            # Double-check after acquiring lock
            if loop_id in self._clients:
                return self._clients[loop_id]

            client = self.client_factory()
            db = client[self.db_name]

            client_data = {
                'client': client,
                'db': db,
                'collections': self._initialize_collections_for_client(db),
                'loop': weakref.ref(loop)
            }
            self._clients[loop_id] = client_data

            self.log_util.info(
                service_name="ListingDB",
                message=f"MongoDB client initialized for event loop {loop_id} (lazy initialization)"
            )

            return client_data

    def _initialize_collections_for_client(self, db):
        """
        Initialize MongoDB collections for a given database instance
        """
        return {
            'incoming_messages': db['incoming_messages'],
            'properties': db['properties'],
            'processing_jobs': db['processing_jobs']
        }

    def close(self):
        """
        Close all MongoDB clients and cleanup resources
        """
        with self._client_lock:
            for loop_id, client_data in self._clients.items():
                try:
                    client_data['client'].close()
                except Exception as e:
                    self.log_util.warning(
                        service_name="ListingDB",
                        message=f"Error closing client for loop {loop_id}: {str(e)}"
                    )

            self._clients.clear()

            self.log_util.info(
                service_name="ListingDB",
                message="All MongoDB clients closed"
            )

    def _handle_db_operation(self, operation_name: str, error: Exception) -> None:
        """
        Log a failed database operation and re-raise it as a StoreException.

        Args:
            operation_name: Name of the operation that failed
            error: The exception that occurred
        """
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="ListingDB",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise StoreException(
                message=f"Database connection error: {str(error)}",
                status_code=503  # Service Unavailable
            )
        else:
            self.log_util.error(
                service_name="ListingDB",
                message=f"Error in {operation_name}: {str(error)}"
            )
            raise StoreException(
                message=f"Database error: {str(error)}",
                status_code=500
            )

    @staticmethod
    def _to_incoming_message(document: Dict[str, Any]) -> IncomingMessageData:
        document["id"] = str(document["_id"])
        return IncomingMessageData.model_validate(document)

    async def ensure_indexes(self) -> None:
        """
        Create the indexes the pipeline relies on. Safe to call on every startup.
        """
        client_data = self._get_client_for_current_loop()
        try:
            incoming = client_data['collections']['incoming_messages']
            await incoming.create_index([("processing.status", ASCENDING), ("created_at", ASCENDING)])
            await incoming.create_index([("ingest.first_seen_at", ASCENDING)])
            await incoming.create_index([("ingest.dedupe_key", ASCENDING)], unique=True)
            await incoming.create_index([("ingest.message_id", ASCENDING)], unique=True)

            properties = client_data['collections']['properties']
            await properties.create_index([("status.lifecycle", ASCENDING), ("status.verification", ASCENDING)])
            await properties.create_index([("address.city", ASCENDING), ("address.state", ASCENDING)])
            await properties.create_index([("deal.category", ASCENDING)])
            await properties.create_index([("text.keywords", ASCENDING)])
            await properties.create_index([("updated_at", DESCENDING)])

            await client_data['collections']['processing_jobs'].create_index([("batch_id", ASCENDING)], unique=True)
        except Exception as e:
            self._handle_db_operation("ensure_indexes", e)

    # Incoming message operations
    async def upsert_incoming_message(self, message: IncomingMessageData) -> str:
        """
        Insert a message if its dedupe key is new, otherwise only refresh
        last_seen_at. Processing state of an existing message is untouched.

        Returns:
            "inserted" or "updated"
        """
        client_data = self._get_client_for_current_loop()
        collection = client_data['collections']['incoming_messages']
        dedupe_key = message.ingest.dedupe_key

        on_insert = _flatten(message.model_dump(exclude={"id"}))
        for field in REDELIVERY_FIELDS + ("ingest.dedupe_key",):
            on_insert.pop(field, None)

        update = {
            "$set": {
                "ingest.last_seen_at": message.ingest.last_seen_at,
                "updated_at": message.updated_at
            },
            "$setOnInsert": on_insert
        }
        try:
            result = await collection.update_one({"ingest.dedupe_key": dedupe_key}, update, upsert=True)
            return "inserted" if result.upserted_id is not None else "updated"
        except DuplicateKeyError:
            # A concurrent delivery of the same message inserted first
            try:
                await collection.update_one({"ingest.dedupe_key": dedupe_key}, {"$set": update["$set"]})
                return "updated"
            except Exception as e:
                self._handle_db_operation("upsert_incoming_message", e)
        except Exception as e:
            self._handle_db_operation("upsert_incoming_message", e)

    async def get_incoming_message_by_dedupe_key(self, dedupe_key: str) -> Optional[IncomingMessageData]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['incoming_messages'].find_one({"ingest.dedupe_key": dedupe_key})
            if result is None:
                return None
            return self._to_incoming_message(result)
        except Exception as e:
            self._handle_db_operation("get_incoming_message_by_dedupe_key", e)

    async def claim_next_message(self, batch_id: str, now: datetime, max_attempts: int,
                                 claim_timeout_seconds: int) -> Optional[IncomingMessageData]:
        """
        Atomically claim the oldest eligible message for this batch.

        A message is eligible while attempts < max_attempts and it is either
        pending or a processing claim whose heartbeat is older than the timeout.

        Returns:
            The claimed message (attempts already incremented), or None when nothing is eligible
        """
        client_data = self._get_client_for_current_loop()
        stale_before = now - timedelta(seconds=claim_timeout_seconds)
        try:
            result = await client_data['collections']['incoming_messages'].find_one_and_update(
                {
                    "source": "whatsapp",
                    "processing.attempts": {"$lt": max_attempts},
                    "$or": [
                        {"processing.status": "pending"},
                        {"processing.status": "processing", "processing.heartbeat_at": {"$lt": stale_before}}
                    ]
                },
                {
                    "$set": {
                        "processing.status": "processing",
                        "processing.claimed_at": now,
                        "processing.started_at": now,
                        "processing.heartbeat_at": now,
                        "processing.worker_batch_id": batch_id,
                        "processing.last_error": None,
                        "updated_at": now
                    },
                    "$inc": {"processing.attempts": 1}
                },
                sort=[("ingest.first_seen_at", ASCENDING)],
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            return self._to_incoming_message(result)
        except Exception as e:
            self._handle_db_operation("claim_next_message", e)

    async def refresh_heartbeat(self, message_id: str, batch_id: str, now: datetime) -> bool:
        """
        Refresh the heartbeat of a claim this batch still owns.

        Returns:
            False when the claim was lost (reclaimed by another batch)
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['incoming_messages'].update_one(
                {
                    "_id": ObjectId(message_id),
                    "processing.status": "processing",
                    "processing.worker_batch_id": batch_id
                },
                {"$set": {"processing.heartbeat_at": now, "updated_at": now}}
            )
            return result.matched_count > 0
        except Exception as e:
            self._handle_db_operation("refresh_heartbeat", e)

    async def mark_message_processed(self, message_id: str, batch_id: str, now: datetime, outcome: str,
                                     listing_ids: List[str], prompt_tokens: int = 0,
                                     completion_tokens: int = 0, total_tokens: int = 0) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['incoming_messages'].update_one(
                {"_id": ObjectId(message_id), "processing.worker_batch_id": batch_id},
                {
                    "$set": {
                        "processing.status": "processed",
                        "processing.processed_at": now,
                        "processing.last_attempt_at": now,
                        "processing.heartbeat_at": now,
                        "processing.last_error": None,
                        "processing.outcome": outcome,
                        "processing.listing_count": len(listing_ids),
                        "processing.listing_ids": listing_ids,
                        "processing.prompt_tokens": prompt_tokens,
                        "processing.completion_tokens": completion_tokens,
                        "processing.total_tokens": total_tokens,
                        "updated_at": now
                    }
                }
            )
            return result.matched_count > 0
        except Exception as e:
            self._handle_db_operation("mark_message_processed", e)

    async def mark_message_failed(self, message_id: str, batch_id: str, now: datetime,
                                  error: str, terminal: bool) -> bool:
        """
        Record a failed attempt. Retryable failures go back to pending with the
        claim cleared; terminal failures end in status failed.
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['incoming_messages'].update_one(
                {"_id": ObjectId(message_id), "processing.worker_batch_id": batch_id},
                {
                    "$set": {
                        "processing.status": "failed" if terminal else "pending",
                        "processing.last_error": error,
                        "processing.last_attempt_at": now,
                        "processing.claimed_at": None,
                        "processing.heartbeat_at": None,
                        "updated_at": now
                    }
                }
            )
            return result.matched_count > 0
        except Exception as e:
            self._handle_db_operation("mark_message_failed", e)

    async def count_pending_messages(self) -> int:
        client_data = self._get_client_for_current_loop()
        try:
            return await client_data['collections']['incoming_messages'].count_documents(
                {"source": "whatsapp", "processing.status": "pending"}
            )
        except Exception as e:
            self._handle_db_operation("count_pending_messages", e)

    async def requeue_failed_messages(self, now: datetime, max_attempts: int, claim_timeout_seconds: int) -> int:
        """
        Reset messages that can no longer be claimed automatically to pending
        with a fresh attempt budget: terminally failed messages, and stale
        processing claims already at the attempt cap (the worker died on the
        last allowed attempt).

        Returns:
            Number of messages requeued
        """
        client_data = self._get_client_for_current_loop()
        stale_before = now - timedelta(seconds=claim_timeout_seconds)
        try:
            result = await client_data['collections']['incoming_messages'].update_many(
                {
                    "$or": [
                        {"processing.status": "failed"},
                        {
                            "processing.status": "processing",
                            "processing.attempts": {"$gte": max_attempts},
                            "processing.heartbeat_at": {"$lt": stale_before}
                        }
                    ]
                },
                {
                    "$set": {
                        "processing.status": "pending",
                        "processing.attempts": 0,
                        "processing.claimed_at": None,
                        "processing.heartbeat_at": None,
                        "processing.worker_batch_id": None,
                        "updated_at": now
                    }
                }
            )
            return result.modified_count
        except Exception as e:
            self._handle_db_operation("requeue_failed_messages", e)

    # Property listing operations
    async def upsert_property_listing(self, listing: PropertyListingData, source_message_id: str) -> str:
        """
        Create or refresh a listing keyed by its stable id and link the source message.

        Returns:
            "created" or "updated"
        """
        client_data = self._get_client_for_current_loop()
        try:
            payload = listing.model_dump(exclude={"id", "created_at", "linked_message_ids"})
            result = await client_data['collections']['properties'].update_one(
                {"_id": listing.id},
                {
                    "$set": payload,
                    "$setOnInsert": {"created_at": listing.created_at},
                    "$addToSet": {"linked_message_ids": source_message_id}
                },
                upsert=True
            )
            return "created" if result.upserted_id is not None else "updated"
        except Exception as e:
            self._handle_db_operation("upsert_property_listing", e)

    async def get_property_listing(self, listing_id: str) -> Optional[PropertyListingData]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['properties'].find_one({"_id": listing_id})
            if result is None:
                return None
            result["id"] = str(result["_id"])
            return PropertyListingData.model_validate(result)
        except Exception as e:
            self._handle_db_operation("get_property_listing", e)

    # Processing job audit operations
    async def save_processing_job(self, job: ProcessingJobData) -> Optional[ProcessingJobData]:
        """
        Create or replace the audit record of a worker run (keyed by batch id).
        """
        client_data = self._get_client_for_current_loop()
        try:
            job_dict = job.model_dump(exclude={"id"})
            result = await client_data['collections']['processing_jobs'].find_one_and_update(
                {"batch_id": job.batch_id},
                {"$set": job_dict},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            result["id"] = str(result["_id"])
            return ProcessingJobData.model_validate(result)
        except Exception as e:
            self._handle_db_operation("save_processing_job", e)
