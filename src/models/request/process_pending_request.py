from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field

BATCH_SIZE_BOUNDS = (1, 20)
MAX_ATTEMPTS_BOUNDS = (1, 10)


def _clamp(value: Optional[int], bounds: Tuple[int, int]) -> Optional[int]:
    if value is None:
        return None
    low, high = bounds
    return max(low, min(value, high))


class ProcessPendingRequest(BaseModel):
    """
    Optional body of POST /internal/worker/process-pending.
    Values are clamped server-side to safe bounds.
    """
    model_config = ConfigDict(populate_by_name=True)

    batch_size: Optional[int] = Field(None, alias="batchSize", description="Messages to claim, clamped to [1, 20]")
    max_attempts: Optional[int] = Field(None, alias="maxAttempts", description="Attempt cap, clamped to [1, 10]")

    def clamped_batch_size(self) -> Optional[int]:
        return _clamp(self.batch_size, BATCH_SIZE_BOUNDS)

    def clamped_max_attempts(self) -> Optional[int]:
        return _clamp(self.max_attempts, MAX_ATTEMPTS_BOUNDS)
