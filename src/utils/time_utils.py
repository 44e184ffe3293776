from datetime import datetime, timezone


def utc_now() -> datetime:
    """
    Current UTC time as a naive datetime, matching what pymongo hands back
    for stored dates (tz_aware=False).
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_epoch_seconds(value) -> datetime | None:
    """
    Convert a provider epoch-seconds timestamp (string or number) to a naive
    UTC datetime. Returns None when the value cannot be interpreted.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = int(value.strip(), 10)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return None
