from typing import List
from pydantic import BaseModel, Field

from models.property_listing_data import ExtractedListing


class ExtractionResult(BaseModel):
    """
    Outcome of one extraction call: coerced listings plus usage metrics.
    """
    listings: List[ExtractedListing] = Field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    truncated: bool = Field(default=False, description="True when the input text was cut to the maximum length")
    raw_response: str = ""
