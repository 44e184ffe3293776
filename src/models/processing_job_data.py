from typing import Optional, List, Literal
from pydantic import BaseModel, Field
from datetime import datetime

from utils.time_utils import utc_now


class ProcessingJobData(BaseModel):
    """
    Audit record summarising one worker run. Written at claim time and
    completed once the batch finishes; used for observability only.
    """
    id: Optional[str] = None  # MongoDB _id
    batch_id: str = Field(..., description="Worker batch id shared with the claimed messages")
    batch_size: int = Field(..., description="Requested batch size")
    message_ids: List[str] = Field(default_factory=list, description="Ids of the claimed incoming messages")
    status: Literal["started", "completed", "failed"] = "started"
    claimed: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    listings_created: int = 0
    listings_updated: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
