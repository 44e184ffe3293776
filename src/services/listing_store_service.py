from typing import List

# Utils
from utils.log_utils import LogUtil
from utils.id_utils import build_listing_id, build_listing_dedupe_key
from utils.time_utils import utc_now

# Database
from database.listing_db import ListingDB

# Models
from models.incoming_message_data import IncomingMessageData
from models.property_listing_data import ExtractedListing, PropertyListingData, ListingIngest, ListingUnit


class ListingStoreService:
    """
    Turns extracted candidates into canonical listings and upserts them.
    The same message and ordinal always map to the same listing id.
    """

    def __init__(self, log_util: LogUtil, listing_db: ListingDB):
        self.log_util = log_util
        self.listing_db = listing_db

    def ensure_units(self, candidate: ExtractedListing) -> List[ListingUnit]:
        if not candidate.units:
            return [ListingUnit(
                unit_id="U1",
                property=candidate.property.model_copy(deep=True),
                deal=candidate.deal.model_copy(deep=True)
            )]
        return [unit.model_copy(deep=True) for unit in candidate.units]

    def build_listing(self, message: IncomingMessageData, candidate: ExtractedListing, ordinal: int) -> PropertyListingData:
        """
        Build the stored listing for the `ordinal`-th (1-based) candidate of a message.
        """
        now = utc_now()
        dedupe_key = message.ingest.dedupe_key
        candidate_data = candidate.model_dump(exclude={"units"})
        return PropertyListingData(
            **candidate_data,
            units=self.ensure_units(candidate),
            id=build_listing_id(dedupe_key, ordinal),
            ingest=ListingIngest(
                source=message.source,
                raw_message_id=message.ingest.raw_message_id,
                group_id=message.ingest.group_id,
                message_id=message.ingest.message_id,
                dedupe_key=build_listing_dedupe_key(message.source, dedupe_key, ordinal),
                first_seen_at=message.ingest.first_seen_at,
                last_seen_at=now
            ),
            created_at=now,
            updated_at=now
        )

    async def upsert_listing(self, message: IncomingMessageData, candidate: ExtractedListing, ordinal: int) -> str:
        """
        Returns:
            "created" or "updated"
        """
        listing = self.build_listing(message, candidate, ordinal)
        outcome = await self.listing_db.upsert_property_listing(listing, source_message_id=message.id)
        self.log_util.debug(
            service_name="ListingStoreService",
            message=f"Listing {listing.id} {outcome} from message {message.ingest.message_id}"
        )
        return outcome

    def listing_id_for(self, message: IncomingMessageData, ordinal: int) -> str:
        return build_listing_id(message.ingest.dedupe_key, ordinal)
