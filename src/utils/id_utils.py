import hashlib
import re
import uuid
from typing import Optional

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_\-:.]")

# Longest message key kept verbatim inside a listing id
MAX_LISTING_KEY_LENGTH = 100
_KEY_DIGEST_LENGTH = 16


def generate_batch_id() -> str:
    return str(uuid.uuid4())


def _listing_key(dedupe_key: str) -> str:
    """
    Message key part of a listing id. Keys that are id-safe and short are kept
    as-is (case preserved); anything else is shortened and suffixed with a
    digest of the full key so distinct keys never collide.
    """
    key = dedupe_key.strip()
    safe = _UNSAFE_KEY_CHARS.sub("_", key)
    if safe == key and len(key) <= MAX_LISTING_KEY_LENGTH:
        return key
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:_KEY_DIGEST_LENGTH]
    prefix_length = MAX_LISTING_KEY_LENGTH - _KEY_DIGEST_LENGTH - 1
    return f"{safe[:prefix_length]}_{digest}"


def build_listing_id(dedupe_key: str, ordinal: int) -> str:
    """
    Stable listing id for the `ordinal`-th (1-based) listing extracted from
    the message identified by `dedupe_key`. The ordinal is always the last
    segment.
    """
    return f"listing_{_listing_key(dedupe_key)}_{ordinal}"


def build_listing_dedupe_key(source: str, dedupe_key: str, ordinal: int) -> str:
    return f"{source}:{dedupe_key}:{ordinal}"


def synthesize_dedupe_key(*parts: Optional[str]) -> str:
    """Fallback dedupe key for provider messages that arrive without an id."""
    digest = hashlib.sha256("|".join(part or "" for part in parts).encode("utf-8")).hexdigest()
    return f"synthetic:{digest[:32]}"
