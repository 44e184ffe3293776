from typing import Optional, Dict, Any, List, Union
from pydantic import BaseModel, Field
from datetime import datetime

from utils.time_utils import utc_now

Number = Union[int, float]


class MoneyValue(BaseModel):
    amount: Optional[Number] = None
    currency: Optional[str] = "NGN"
    period: Optional[str] = Field("per_year", description="per_year, per_month, per_week, per_day, sale or any opaque string the model used")
    negotiable: bool = False
    notes: Optional[str] = None


class ListingStatus(BaseModel):
    lifecycle: str = "active"
    verification: str = "unverified"
    extracted_confidence: Optional[Number] = 0.6


class ListingDeal(BaseModel):
    category: str = Field("rent", description="rent, sale, lease, shortlet or any opaque string the model used")
    price: Optional[MoneyValue] = None
    fees: Dict[str, Any] = Field(default_factory=dict)


class ListingProperty(BaseModel):
    type: str = "apartment"
    subtype_note: Optional[str] = None
    bedrooms: Optional[Number] = None
    bathrooms: Optional[Number] = None
    toilets: Optional[Number] = None
    furnishing: Optional[str] = None


class GeoPoint(BaseModel):
    lat: Optional[Number] = None
    lng: Optional[Number] = None


class ListingGeo(BaseModel):
    point: Optional[GeoPoint] = None
    precision: str = "area"
    geocoder: Optional[str] = None
    geocoded_at: Optional[datetime] = None
    confidence: Optional[Number] = None
    sources: List[str] = Field(default_factory=list)


class ListingAddress(BaseModel):
    display: Optional[str] = None
    street: Optional[str] = None
    landmark: Optional[str] = None
    area: Optional[str] = None
    district: Optional[str] = None
    city: Optional[str] = None
    lga: Optional[str] = None
    state: Optional[str] = None
    country: str = "NG"
    geo: ListingGeo = Field(default_factory=ListingGeo)


class ListingBuilding(BaseModel):
    estate_name: Optional[str] = None
    security: List[str] = Field(default_factory=list)
    amenities: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class ListingUnit(BaseModel):
    unit_id: str = "U1"
    property: ListingProperty = Field(default_factory=ListingProperty)
    deal: ListingDeal = Field(default_factory=ListingDeal)
    quantity: Optional[Number] = None


class TenantRequirements(BaseModel):
    profile: Optional[str] = None
    employment: Optional[str] = None
    income: Optional[str] = None
    notes: Optional[str] = None


class ListingMedia(BaseModel):
    photos: List[str] = Field(default_factory=list)
    videos: List[str] = Field(default_factory=list)


class ListingContact(BaseModel):
    agent_name: Optional[str] = None
    phones: List[str] = Field(default_factory=list)
    whatsapp: Optional[str] = None
    agency: Optional[str] = None
    co_broker_allowed: Optional[bool] = None


class ListingText(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)


class ListingQuality(BaseModel):
    confidence_overall: Optional[Number] = None
    unused_data_pct: Optional[Number] = None
    field_confidence: Dict[str, Number] = Field(default_factory=dict)


class ListingAudit(BaseModel):
    source_spans: Dict[str, str] = Field(default_factory=dict)
    assumptions: List[str] = Field(default_factory=list)
    parser_version: str = "v0.1"
    input_truncated: bool = False


class ExtractedListing(BaseModel):
    """
    One candidate listing as returned by the extraction model, after coercion.
    Every substructure is present so partial model output stays well-formed.
    """
    status: ListingStatus = Field(default_factory=ListingStatus)
    deal: ListingDeal = Field(default_factory=ListingDeal)
    property: ListingProperty = Field(default_factory=ListingProperty)
    address: ListingAddress = Field(default_factory=ListingAddress)
    building: ListingBuilding = Field(default_factory=ListingBuilding)
    units: List[ListingUnit] = Field(default_factory=list)
    tenant_requirements: TenantRequirements = Field(default_factory=TenantRequirements)
    media: ListingMedia = Field(default_factory=ListingMedia)
    contact: ListingContact = Field(default_factory=ListingContact)
    text: ListingText = Field(default_factory=ListingText)
    quality: ListingQuality = Field(default_factory=ListingQuality)
    audit: ListingAudit = Field(default_factory=ListingAudit)


class ListingIngest(BaseModel):
    source: str = "whatsapp"
    raw_message_id: Optional[str] = None
    group_id: Optional[str] = None
    message_id: Optional[str] = None
    dedupe_key: str = Field(..., description="<source>:<message dedupe key>:<ordinal>")
    first_seen_at: datetime = Field(default_factory=utc_now)
    last_seen_at: datetime = Field(default_factory=utc_now)


class PropertyListingData(ExtractedListing):
    """
    Canonical listing stored in the properties collection. The id is derived
    from the source message's dedupe key and the listing ordinal.
    """
    id: str = Field(..., description="Stable listing id, stored as _id")
    ingest: ListingIngest
    linked_message_ids: List[str] = Field(default_factory=list, description="Incoming messages that produced or reinforced this listing")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
