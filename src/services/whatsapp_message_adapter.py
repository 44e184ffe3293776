"""
WhatsApp Message Adapter
Turns WhatsApp Cloud API webhook deliveries into IncomingMessageData records.
"""
from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime
from pydantic import ValidationError

# Utils
from utils.log_utils import LogUtil
from utils.id_utils import synthesize_dedupe_key
from utils.time_utils import from_epoch_seconds, utc_now

# Exceptions
from exceptions.pipeline_exception import ValidationException

# Models
from models.request.whatsapp_webhook_payload import WhatsAppWebhookPayload, WhatsAppChangeValue, WhatsAppContact
from models.incoming_message_data import IncomingMessageData, MessageIngest, MessageContent, MessageSender

MEDIA_MESSAGE_TYPES = ("image", "video", "document")


class WhatsAppMessageAdapter:
    """
    Parses the webhook envelope and normalizes each supported message.
    Text messages are always kept; media messages only when they carry a caption.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def parse_payload(self, payload: Any, now: Optional[datetime] = None) -> Tuple[List[IncomingMessageData], int]:
        """
        Normalize a webhook delivery.

        Args:
            payload: Decoded JSON body of the webhook
            now: Delivery time used for first_seen_at/last_seen_at

        Returns:
            Tuple of (normalized messages, number of skipped messages)

        Raises:
            ValidationException: If the envelope does not match the WhatsApp webhook shape
        """
        if not isinstance(payload, dict):
            raise ValidationException("Webhook payload must be a JSON object")

        try:
            envelope = WhatsAppWebhookPayload.model_validate(payload)
        except ValidationError as e:
            raise ValidationException(f"Invalid WhatsApp webhook envelope: {e.error_count()} validation error(s)")

        now = now or utc_now()
        messages: List[IncomingMessageData] = []
        skipped = 0

        for entry in envelope.entry:
            for change in entry.changes:
                if change.field != "messages" or change.value is None:
                    continue

                for raw_message in change.value.messages:
                    message = self._normalize_message(raw_message, change.value, now)
                    if message is None:
                        skipped += 1
                        continue
                    messages.append(message)

        if skipped:
            self.log_util.info(
                service_name="WhatsAppMessageAdapter",
                message=f"Skipped {skipped} unsupported WhatsApp message(s)"
            )

        return messages, skipped

    def _extract_content(self, raw_message: Dict[str, Any]) -> Optional[MessageContent]:
        message_type = raw_message.get("type")

        if message_type == "text":
            text_data = raw_message.get("text")
            body = text_data.get("body") if isinstance(text_data, dict) else None
            if not isinstance(body, str):
                return None
            return MessageContent(text=body)

        if message_type in MEDIA_MESSAGE_TYPES:
            media_data = raw_message.get(message_type)
            if not isinstance(media_data, dict):
                return None
            caption = media_data.get("caption")
            if not isinstance(caption, str) or not caption.strip():
                return None
            media_ref = media_data.get("link") or media_data.get("url") or media_data.get("id")
            return MessageContent(
                text=caption,
                media_urls=[media_ref] if isinstance(media_ref, str) else [],
                media_type=message_type
            )

        return None

    def _resolve_contact(self, sender_id: Optional[str], contacts: List[WhatsAppContact]) -> Optional[WhatsAppContact]:
        for contact in contacts:
            if sender_id is not None and contact.wa_id == sender_id:
                return contact
        return contacts[0] if contacts else None

    def _normalize_message(self, raw_message: Dict[str, Any], value: WhatsAppChangeValue,
                           now: datetime) -> Optional[IncomingMessageData]:
        content = self._extract_content(raw_message)
        if content is None:
            return None

        sender_id = raw_message.get("from") if isinstance(raw_message.get("from"), str) else None
        timestamp = raw_message.get("timestamp")
        contact = self._resolve_contact(sender_id, value.contacts)

        raw_message_id = raw_message.get("id") if isinstance(raw_message.get("id"), str) and raw_message.get("id") else None
        if raw_message_id:
            dedupe_key = raw_message_id
        else:
            dedupe_key = synthesize_dedupe_key(sender_id, str(timestamp) if timestamp is not None else None, content.text)

        context = raw_message.get("context")
        group_id = context.get("id") if isinstance(context, dict) and isinstance(context.get("id"), str) else None

        return IncomingMessageData(
            source="whatsapp",
            ingest=MessageIngest(
                message_id=dedupe_key,
                group_id=group_id,
                raw_message_id=raw_message_id,
                dedupe_key=dedupe_key,
                synthesized_key=raw_message_id is None,
                received_at=from_epoch_seconds(timestamp) or now,
                first_seen_at=now,
                last_seen_at=now
            ),
            payload={
                "metadata": value.metadata,
                "contact": contact.model_dump(exclude_none=True) if contact else None,
                "message": raw_message
            },
            message=content,
            sender=MessageSender(
                phone=(contact.wa_id if contact and contact.wa_id else None) or sender_id,
                name=contact.profile.name if contact and contact.profile else None,
                metadata=contact.model_dump(exclude_none=True) if contact else {}
            ),
            created_at=now,
            updated_at=now
        )
