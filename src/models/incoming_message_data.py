from typing import Optional, Dict, Any, List, Literal
from pydantic import BaseModel, Field
from datetime import datetime

from utils.time_utils import utc_now

MessageStatus = Literal["pending", "processing", "processed", "failed"]


class MessageIngest(BaseModel):
    """
    Provenance of an inbound message. dedupe_key is globally unique.
    """
    message_id: str = Field(..., description="Provider message id (or the synthesized key when the provider sent none)")
    group_id: Optional[str] = Field(None, description="Id of the message this one replies to, if any")
    raw_message_id: Optional[str] = Field(None, description="Provider message id exactly as delivered")
    dedupe_key: str = Field(..., description="Stable key used to prevent duplicate ingestion")
    synthesized_key: bool = Field(default=False, description="True when dedupe_key was synthesized from message content")
    received_at: datetime = Field(default_factory=utc_now, description="Origin time claimed by the provider")
    first_seen_at: datetime = Field(default_factory=utc_now, description="First webhook delivery")
    last_seen_at: datetime = Field(default_factory=utc_now, description="Most recent webhook delivery")


class MessageContent(BaseModel):
    text: str = ""
    media_urls: List[str] = Field(default_factory=list)
    media_type: Optional[str] = None


class MessageSender(BaseModel):
    phone: Optional[str] = None
    name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MessageProcessing(BaseModel):
    """
    Processing state machine: pending -> processing -> processed | pending (retry) | failed
    """
    status: MessageStatus = "pending"
    attempts: int = 0
    claimed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    worker_batch_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    outcome: Optional[str] = Field(None, description="listings, no_listings or empty_text once processed")
    listing_count: int = 0
    listing_ids: List[str] = Field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class IncomingMessageData(BaseModel):
    """
    Model for inbound messages stored in the incoming_messages collection.
    """
    id: Optional[str] = None  # MongoDB _id
    source: str = Field(default="whatsapp", description="Channel the message arrived on")
    ingest: MessageIngest
    payload: Dict[str, Any] = Field(default_factory=dict, description="Opaque provider payload preserved for audit")
    message: MessageContent = Field(default_factory=MessageContent)
    sender: MessageSender = Field(default_factory=MessageSender)
    processing: MessageProcessing = Field(default_factory=MessageProcessing)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def has_text(self) -> bool:
        return bool(self.message.text and self.message.text.strip())
