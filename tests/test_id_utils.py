"""Tests for identifier helpers."""
from utils.id_utils import (
    MAX_LISTING_KEY_LENGTH,
    build_listing_dedupe_key,
    build_listing_id,
    generate_batch_id,
    synthesize_dedupe_key,
)


def test_listing_id_is_stable_per_message_and_ordinal():
    first = build_listing_id("wamid.HBgLMjM0", 1)
    assert first == build_listing_id("wamid.HBgLMjM0", 1)
    assert first == "listing_wamid.HBgLMjM0_1"
    assert build_listing_id("wamid.HBgLMjM0", 2) != first


def test_listing_id_keeps_key_case():
    assert build_listing_id("wamid.HBgLAbCd", 1) != build_listing_id("wamid.HBgLaBcD", 1)


def test_long_key_keeps_one_id_per_ordinal():
    long_key = "wamid." + "HBgLMjM0ODA" * 11

    ids = [build_listing_id(long_key, ordinal) for ordinal in (1, 2, 3)]

    assert len(set(ids)) == 3
    assert [listing_id.rsplit("_", 1)[1] for listing_id in ids] == ["1", "2", "3"]
    assert all(len(listing_id) <= len("listing_") + MAX_LISTING_KEY_LENGTH + len("_3") for listing_id in ids)


def test_long_keys_sharing_a_prefix_do_not_collide():
    prefix = "wamid." + "A" * 200
    assert build_listing_id(prefix + "x", 1) != build_listing_id(prefix + "y", 1)


def test_unsafe_chars_are_replaced_without_collisions():
    slashed = build_listing_id("wamid.ABC==/1", 1)

    assert "/" not in slashed and "=" not in slashed
    assert slashed != build_listing_id("wamid.ABC___1", 1)
    assert slashed.endswith("_1")


def test_listing_dedupe_key_format():
    assert build_listing_dedupe_key("whatsapp", "wamid.X", 3) == "whatsapp:wamid.X:3"


def test_synthesized_key_is_deterministic():
    key = synthesize_dedupe_key("2348012345678", "1717430400", "2 bedroom flat")
    assert key.startswith("synthetic:")
    assert len(key) == len("synthetic:") + 32
    assert key == synthesize_dedupe_key("2348012345678", "1717430400", "2 bedroom flat")
    assert key != synthesize_dedupe_key("2348012345678", "1717430401", "2 bedroom flat")


def test_batch_ids_are_unique():
    assert generate_batch_id() != generate_batch_id()
