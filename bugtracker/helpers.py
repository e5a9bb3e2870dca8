import datetime
from typing import Optional

# Discord epoch (2015-01-01T00:00:00Z) in milliseconds
DISCORD_EPOCH = 1420070400000
TIMESTAMP_SHIFT = 22
_EPOCH_DT = datetime.datetime(2015, 1, 1, tzinfo=datetime.timezone.utc)


def as_utc(dt: datetime.datetime) -> datetime.datetime:
    """Attach UTC to naive datetimes (SQLite hands them back naive) and convert aware ones."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def datetime_to_snowflake(dt: datetime.datetime) -> int:
    """Smallest snowflake that can exist at the given instant. Naive datetimes are UTC."""
    millis = (as_utc(dt) - _EPOCH_DT) // datetime.timedelta(milliseconds=1)
    return max(0, millis << TIMESTAMP_SHIFT)


def snowflake_to_datetime(snowflake: int) -> datetime.datetime:
    millis = int(snowflake) >> TIMESTAMP_SHIFT
    return _EPOCH_DT + datetime.timedelta(milliseconds=millis)


def since_date_lower_bound(dt: datetime.datetime) -> int:
    """
    Exclusive `after` cursor that includes every message sent at or after `dt`.

    A message created exactly at `dt` with zeroed worker/sequence bits has id
    datetime_to_snowflake(dt), so the cursor sits one below it.
    """
    return max(0, datetime_to_snowflake(dt) - 1)


def build_jump_url(guild_id: Optional[int], channel_id: int, message_id: int) -> str:
    guild_part = guild_id if guild_id else "@me"
    return f"https://discord.com/channels/{guild_part}/{channel_id}/{message_id}"


def shorten(text: str, limit: int) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
