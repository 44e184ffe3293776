from pydantic import BaseModel, Field


class IntakeResult(BaseModel):
    """
    Counts produced by one webhook delivery.
    """
    inserted: int = Field(default=0, description="New messages stored")
    updated: int = Field(default=0, description="Redelivered messages whose last_seen_at was refreshed")
    skipped: int = Field(default=0, description="Messages that carried nothing to store (unsupported types)")


class WebhookIntakeResponse(IntakeResult):
    status: str = Field(..., description="Processing status (success, error)")
    message: str = Field(..., description="Human-readable message")

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "success",
                "message": "Webhook stored",
                "inserted": 1,
                "updated": 0,
                "skipped": 0
            }
        }
    }
