import json
from typing import Optional, Dict, Any, List, Tuple
import httpx

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.coercion_utils import (
    coerce_string,
    coerce_number,
    coerce_boolean,
    coerce_string_array,
    coerce_mapping,
    coerce_number_mapping,
    coerce_string_mapping,
)

# Exceptions
from exceptions.pipeline_exception import ExtractionException

# Models
from models.extraction_result import ExtractionResult
from models.property_listing_data import (
    ExtractedListing,
    ListingStatus,
    ListingDeal,
    ListingProperty,
    ListingAddress,
    ListingGeo,
    GeoPoint,
    ListingBuilding,
    ListingUnit,
    TenantRequirements,
    ListingMedia,
    ListingContact,
    ListingText,
    ListingQuality,
    ListingAudit,
    MoneyValue,
)

TEMPERATURE = 0.1
MAX_COMPLETION_TOKENS = 1800
RESPONSE_SCHEMA_NAME = "whatsapp_property_listings"

SYSTEM_PROMPT = " ".join([
    "You are a structured data extraction engine for Nigerian property listings.",
    "Parse WhatsApp-style text messages describing rentals or sales.",
    "Always return JSON that conforms to the provided schema.",
    "When information is missing, set the field to null instead of omitting it.",
    "If a message contains more than one listing, output one entry per listing.",
    "Standardise units and currency: use NGN amounts, interpret # or ₦ as Naira.",
    "Infer reasonable defaults when clearly implied (e.g., rent is per_year unless stated otherwise).",
    "Populate quality.field_confidence with scores between 0 and 1 for the fields you fill.",
    "Use snake_case strings for tags such as amenities or keywords.",
])


def _nullable(json_type: str) -> Dict[str, Any]:
    return {"type": [json_type, "null"]}


def _string_array() -> Dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}}


def _object(properties: Dict[str, Any], nullable: bool = False) -> Dict[str, Any]:
    return {
        "type": ["object", "null"] if nullable else "object",
        "additionalProperties": True,
        "properties": properties,
    }


_MONEY_SCHEMA = _object({
    "amount": _nullable("number"),
    "currency": _nullable("string"),
    "period": _nullable("string"),
    "negotiable": _nullable("boolean"),
    "notes": _nullable("string"),
}, nullable=True)

_PROPERTY_SCHEMA = _object({
    "type": _nullable("string"),
    "subtype_note": _nullable("string"),
    "bedrooms": _nullable("number"),
    "bathrooms": _nullable("number"),
    "toilets": _nullable("number"),
    "furnishing": _nullable("string"),
})

_DEAL_SCHEMA = _object({
    "category": _nullable("string"),
    "price": _MONEY_SCHEMA,
    "fees": {"type": "object", "additionalProperties": True},
})

_LISTING_SCHEMA = _object({
    "status": _object({
        "lifecycle": _nullable("string"),
        "verification": _nullable("string"),
        "extracted_confidence": _nullable("number"),
    }),
    "deal": _DEAL_SCHEMA,
    "property": _PROPERTY_SCHEMA,
    "address": _object({
        "display": _nullable("string"),
        "street": _nullable("string"),
        "landmark": _nullable("string"),
        "area": _nullable("string"),
        "district": _nullable("string"),
        "city": _nullable("string"),
        "lga": _nullable("string"),
        "state": _nullable("string"),
        "country": _nullable("string"),
        "geo": _object({
            "point": _object({"lat": _nullable("number"), "lng": _nullable("number")}, nullable=True),
            "precision": _nullable("string"),
            "confidence": _nullable("number"),
            "sources": _string_array(),
        }, nullable=True),
    }),
    "building": _object({
        "estate_name": _nullable("string"),
        "security": _string_array(),
        "amenities": _string_array(),
        "notes": _nullable("string"),
    }),
    "units": {
        "type": "array",
        "items": _object({
            "unit_id": _nullable("string"),
            "property": _PROPERTY_SCHEMA,
            "deal": _DEAL_SCHEMA,
            "quantity": _nullable("number"),
        }),
    },
    "tenant_requirements": _object({
        "profile": _nullable("string"),
        "employment": _nullable("string"),
        "income": _nullable("string"),
        "notes": _nullable("string"),
    }),
    "media": _object({"photos": _string_array(), "videos": _string_array()}),
    "contact": _object({
        "agent_name": _nullable("string"),
        "phones": _string_array(),
        "whatsapp": _nullable("string"),
        "agency": _nullable("string"),
        "co_broker_allowed": _nullable("boolean"),
    }),
    "text": _object({
        "title": _nullable("string"),
        "description": _nullable("string"),
        "keywords": _string_array(),
    }),
    "quality": _object({
        "confidence_overall": _nullable("number"),
        "unused_data_pct": _nullable("number"),
        "field_confidence": {"type": "object", "additionalProperties": {"type": "number"}},
    }),
    "audit": _object({
        "source_spans": {"type": "object", "additionalProperties": {"type": "string"}},
        "assumptions": _string_array(),
        "parser_version": _nullable("string"),
    }),
})


def build_response_format(max_listings: int) -> Dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": RESPONSE_SCHEMA_NAME,
            "schema": {
                "type": "object",
                "additionalProperties": False,
                "required": ["listings"],
                "properties": {
                    "listings": {
                        "type": "array",
                        "minItems": 0,
                        "maxItems": max_listings,
                        "items": _LISTING_SCHEMA,
                    }
                },
            },
        },
    }


def build_user_prompt(message_text: str, message_id: str, max_listings: Optional[int]) -> str:
    lines = [
        f"Message ID: {message_id}",
        f"Maximum listings to extract: {max_listings}" if max_listings else None,
        "Extract as many property listings as the text clearly contains.",
        "Return empty arrays when you cannot find a value.",
        "Set null for any scalar field you cannot determine.",
        "Raw message:",
        '"""',
        message_text,
        '"""',
    ]
    return "\n".join(line for line in lines if line)


# Coercion of model output into fully-shaped listings

def coerce_money(value: Any, category: Optional[str] = None) -> Optional[MoneyValue]:
    """
    Returns None when the model gave nothing that implies a price.
    """
    if not isinstance(value, dict):
        return None
    amount = coerce_number(value.get("amount"))
    currency = coerce_string(value.get("currency"))
    period = coerce_string(value.get("period"))
    negotiable = coerce_boolean(value.get("negotiable"))
    if amount is None and currency is None and period is None and negotiable is None:
        return None
    return MoneyValue(
        amount=amount,
        currency=currency or "NGN",
        period=period or ("sale" if category == "sale" else "per_year"),
        negotiable=negotiable if negotiable is not None else False,
        notes=coerce_string(value.get("notes"))
    )


def coerce_property(value: Any) -> ListingProperty:
    source = coerce_mapping(value)
    return ListingProperty(
        type=coerce_string(source.get("type")) or "apartment",
        subtype_note=coerce_string(source.get("subtype_note")),
        bedrooms=coerce_number(source.get("bedrooms")),
        bathrooms=coerce_number(source.get("bathrooms")),
        toilets=coerce_number(source.get("toilets")),
        furnishing=coerce_string(source.get("furnishing"))
    )


def coerce_deal(value: Any) -> ListingDeal:
    source = coerce_mapping(value)
    category = coerce_string(source.get("category")) or "rent"
    return ListingDeal(
        category=category,
        price=coerce_money(source.get("price"), category),
        fees=coerce_mapping(source.get("fees"))
    )


def coerce_unit(value: Any, index: int) -> Optional[ListingUnit]:
    if not isinstance(value, dict):
        return None
    return ListingUnit(
        unit_id=coerce_string(value.get("unit_id")) or f"U{index + 1}",
        property=coerce_property(value.get("property")),
        deal=coerce_deal(value.get("deal")),
        quantity=coerce_number(value.get("quantity"))
    )


def coerce_geo(value: Any) -> ListingGeo:
    source = coerce_mapping(value)
    point = source.get("point")
    return ListingGeo(
        point=GeoPoint(lat=coerce_number(point.get("lat")), lng=coerce_number(point.get("lng"))) if isinstance(point, dict) else None,
        precision=coerce_string(source.get("precision")) or "area",
        geocoder=coerce_string(source.get("geocoder")),
        confidence=coerce_number(source.get("confidence")),
        sources=coerce_string_array(source.get("sources"))
    )


def coerce_listing(value: Dict[str, Any]) -> ExtractedListing:
    """
    Shape one raw model listing into an ExtractedListing. Never raises:
    anything missing or mistyped falls back to the field default.
    """
    status = coerce_mapping(value.get("status"))
    address = coerce_mapping(value.get("address"))
    building = coerce_mapping(value.get("building"))
    tenant = coerce_mapping(value.get("tenant_requirements"))
    media = coerce_mapping(value.get("media"))
    contact = coerce_mapping(value.get("contact"))
    text = coerce_mapping(value.get("text"))
    quality = coerce_mapping(value.get("quality"))
    audit = coerce_mapping(value.get("audit"))

    raw_units = value.get("units") if isinstance(value.get("units"), list) else []
    units = [unit for unit in (coerce_unit(item, idx) for idx, item in enumerate(raw_units)) if unit is not None]

    extracted_confidence = coerce_number(status.get("extracted_confidence"))

    return ExtractedListing(
        status=ListingStatus(
            lifecycle=coerce_string(status.get("lifecycle")) or "active",
            verification=coerce_string(status.get("verification")) or "unverified",
            extracted_confidence=extracted_confidence if extracted_confidence is not None else 0.6
        ),
        deal=coerce_deal(value.get("deal")),
        property=coerce_property(value.get("property")),
        address=ListingAddress(
            display=coerce_string(address.get("display")),
            street=coerce_string(address.get("street")),
            landmark=coerce_string(address.get("landmark")),
            area=coerce_string(address.get("area")),
            district=coerce_string(address.get("district")),
            city=coerce_string(address.get("city")),
            lga=coerce_string(address.get("lga")),
            state=coerce_string(address.get("state")),
            country=coerce_string(address.get("country")) or "NG",
            geo=coerce_geo(address.get("geo"))
        ),
        building=ListingBuilding(
            estate_name=coerce_string(building.get("estate_name")),
            security=coerce_string_array(building.get("security")),
            amenities=coerce_string_array(building.get("amenities")),
            notes=coerce_string(building.get("notes"))
        ),
        units=units,
        tenant_requirements=TenantRequirements(
            profile=coerce_string(tenant.get("profile")),
            employment=coerce_string(tenant.get("employment")),
            income=coerce_string(tenant.get("income")),
            notes=coerce_string(tenant.get("notes"))
        ),
        media=ListingMedia(
            photos=coerce_string_array(media.get("photos")),
            videos=coerce_string_array(media.get("videos"))
        ),
        contact=ListingContact(
            agent_name=coerce_string(contact.get("agent_name")),
            phones=coerce_string_array(contact.get("phones")),
            whatsapp=coerce_string(contact.get("whatsapp")),
            agency=coerce_string(contact.get("agency")),
            co_broker_allowed=coerce_boolean(contact.get("co_broker_allowed"))
        ),
        text=ListingText(
            title=coerce_string(text.get("title")),
            description=coerce_string(text.get("description")),
            keywords=coerce_string_array(text.get("keywords"))
        ),
        quality=ListingQuality(
            confidence_overall=coerce_number(quality.get("confidence_overall")),
            unused_data_pct=coerce_number(quality.get("unused_data_pct")),
            field_confidence=coerce_number_mapping(quality.get("field_confidence"))
        ),
        audit=ListingAudit(
            source_spans=coerce_string_mapping(audit.get("source_spans")),
            assumptions=coerce_string_array(audit.get("assumptions")),
            parser_version=coerce_string(audit.get("parser_version")) or "v0.1"
        )
    )


class ExtractionService:
    """
    Client for an OpenAI-compatible chat-completions endpoint that turns a
    free-text advert into structured listing candidates.
    """

    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.log_util = log_util
        self.api_key = environment_utils.get_env_variable("OPENAI_API_KEY")
        self.base_url = str(environment_utils.get_env_variable("OPENAI_BASE_URL")).rstrip("/")
        self.model = environment_utils.get_env_variable("EXTRACTION_MODEL")
        self.max_message_length = int(environment_utils.get_env_variable("EXTRACTION_MAX_MESSAGE_LENGTH"))
        self.default_max_listings = int(environment_utils.get_env_variable("EXTRACTION_MAX_LISTINGS"))
        self.timeout = float(environment_utils.get_env_variable("EXTRACTION_TIMEOUT_SECONDS"))
        # Tests inject httpx.MockTransport
        self.transport = transport

    def sanitize_message(self, text: Optional[str]) -> Tuple[str, bool]:
        """
        Trim and hard-truncate the message.

        Returns:
            Tuple of (content, truncated)
        """
        if not text:
            return "", False
        trimmed = text.strip()
        if len(trimmed) <= self.max_message_length:
            return trimmed, False
        return trimmed[:self.max_message_length], True

    async def extract(self, text: Optional[str], message_id: str, max_listings: Optional[int] = None) -> ExtractionResult:
        """
        Extract listing candidates from one message.

        Raises:
            ExtractionException: Model unreachable, non-2xx, or unparsable output
        """
        max_listings = max_listings or self.default_max_listings
        content, truncated = self.sanitize_message(text)

        if not content:
            return ExtractionResult(truncated=truncated)

        if not self.api_key:
            raise ExtractionException("No API key configured for listing extraction")

        request_body = {
            "model": self.model,
            "temperature": TEMPERATURE,
            "max_tokens": MAX_COMPLETION_TOKENS,
            "response_format": build_response_format(max_listings),
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(content, message_id, max_listings)},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

        self.log_util.info(
            service_name="ExtractionService",
            message=f"Submitting listing extraction request for message {message_id} (model={self.model}, truncated={truncated})"
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/chat/completions", json=request_body, headers=headers)
        except httpx.TimeoutException:
            raise ExtractionException(f"Extraction request timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            raise ExtractionException(f"Extraction request failed: {str(e)}")

        if response.status_code < 200 or response.status_code >= 300:
            raise ExtractionException(f"Extraction HTTP {response.status_code}: {response.text[:500]}")

        completion = self._parse_json(response.text, message_id, "completion")
        raw_content = self._first_choice_content(completion)
        if not raw_content:
            raise ExtractionException("Extraction returned empty response")

        parsed = self._parse_json(raw_content, message_id, "listing")
        if not isinstance(parsed, dict):
            raise ExtractionException("Extraction returned a non-object JSON document")

        listings_source = parsed.get("listings")
        raw_listings: List[Dict[str, Any]] = []
        if isinstance(listings_source, list):
            raw_listings = [item for item in listings_source if isinstance(item, dict)][:max_listings]

        usage = completion.get("usage") if isinstance(completion.get("usage"), dict) else {}
        return ExtractionResult(
            listings=[coerce_listing(item) for item in raw_listings],
            prompt_tokens=self._token_count(usage.get("prompt_tokens")),
            completion_tokens=self._token_count(usage.get("completion_tokens")),
            total_tokens=self._token_count(usage.get("total_tokens")),
            truncated=truncated,
            raw_response=raw_content
        )

    def _parse_json(self, raw: str, message_id: str, label: str) -> Any:
        try:
            return json.loads(raw)
        except ValueError:
            self.log_util.error(
                service_name="ExtractionService",
                message=f"Failed to parse {label} JSON for message {message_id}: {raw[:200]}"
            )
            raise ExtractionException(f"Extraction returned unparsable {label} JSON")

    @staticmethod
    def _first_choice_content(completion: Any) -> str:
        if not isinstance(completion, dict):
            return ""
        choices = completion.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ""
        message = choices[0].get("message")
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        return content if isinstance(content, str) else ""

    @staticmethod
    def _token_count(value: Any) -> int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return 0
