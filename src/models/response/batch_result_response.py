from pydantic import BaseModel, Field


class BatchResult(BaseModel):
    """
    Aggregate outcome of one worker run.
    remaining_pending gives the caller back-pressure visibility.
    """
    batch_id: str
    claimed: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    listings_created: int = 0
    listings_updated: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    remaining_pending: int = Field(default=0, description="Messages still pending after this run")
