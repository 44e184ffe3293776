from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field


class WhatsAppProfile(BaseModel):
    model_config = ConfigDict(extra='allow')

    name: Optional[str] = None


class WhatsAppContact(BaseModel):
    model_config = ConfigDict(extra='allow')

    wa_id: Optional[str] = None
    profile: Optional[WhatsAppProfile] = None


class WhatsAppChangeValue(BaseModel):
    model_config = ConfigDict(extra='allow')

    messaging_product: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    contacts: List[WhatsAppContact] = Field(default_factory=list)
    # Messages stay as raw dicts: their shape depends on the message type
    messages: List[Dict[str, Any]] = Field(default_factory=list)


class WhatsAppChange(BaseModel):
    model_config = ConfigDict(extra='allow')

    field: Optional[str] = None
    value: Optional[WhatsAppChangeValue] = None


class WhatsAppEntry(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: Optional[str] = None
    changes: List[WhatsAppChange] = Field(default_factory=list)


class WhatsAppWebhookPayload(BaseModel):
    """
    Envelope of a WhatsApp Cloud API webhook delivery. Unknown fields are
    accepted so new provider fields never break intake.
    """
    object: Optional[str] = None
    entry: List[WhatsAppEntry]

    model_config = ConfigDict(
        extra='allow',
        json_schema_extra={
            "example": {
                "object": "whatsapp_business_account",
                "entry": [{
                    "id": "WABA_ID",
                    "changes": [{
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": "PHONE_NUMBER_ID"},
                            "contacts": [{"wa_id": "2348012345678", "profile": {"name": "Ada"}}],
                            "messages": [{
                                "from": "2348012345678",
                                "id": "wamid.HBgLMjM0ODAxMjM0NTY3OBUCABIYFjNFQjA",
                                "timestamp": "1717430400",
                                "type": "text",
                                "text": {"body": "2 bedroom flat, Lekki, ₦1.2m/year"}
                            }]
                        }
                    }]
                }]
            }
        }
    )
