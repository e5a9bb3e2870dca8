import datetime

from bugtracker.helpers import (
    DISCORD_EPOCH,
    TIMESTAMP_SHIFT,
    as_utc,
    build_jump_url,
    datetime_to_snowflake,
    shorten,
    since_date_lower_bound,
    snowflake_to_datetime,
)

UTC = datetime.timezone.utc
MS = datetime.timedelta(milliseconds=1)


def test_epoch_is_zero():
    assert datetime_to_snowflake(datetime.datetime(2015, 1, 1, tzinfo=UTC)) == 0


def test_known_date():
    dt = datetime.datetime(2024, 1, 1, tzinfo=UTC)
    assert datetime_to_snowflake(dt) == (1704067200000 - DISCORD_EPOCH) << TIMESTAMP_SHIFT


def test_before_epoch_clamps_to_zero():
    assert datetime_to_snowflake(datetime.datetime(2014, 6, 1, tzinfo=UTC)) == 0
    assert since_date_lower_bound(datetime.datetime(2014, 6, 1, tzinfo=UTC)) == 0


def test_naive_datetimes_are_utc():
    naive = datetime.datetime(2024, 5, 17, 8, 30)
    assert datetime_to_snowflake(naive) == datetime_to_snowflake(naive.replace(tzinfo=UTC))


def test_other_timezones_are_converted():
    plus_two = datetime.timezone(datetime.timedelta(hours=2))
    local = datetime.datetime(2024, 5, 17, 10, 30, tzinfo=plus_two)
    assert datetime_to_snowflake(local) == datetime_to_snowflake(datetime.datetime(2024, 5, 17, 8, 30, tzinfo=UTC))


def test_snowflake_round_trip_keeps_milliseconds():
    dt = datetime.datetime(2024, 5, 17, 8, 30, 12, 345000, tzinfo=UTC)
    assert snowflake_to_datetime(datetime_to_snowflake(dt)) == dt


def test_low_bits_do_not_change_the_timestamp():
    dt = datetime.datetime(2024, 5, 17, 8, 30, 12, 345000, tzinfo=UTC)
    snowflake = datetime_to_snowflake(dt)
    assert snowflake_to_datetime(snowflake + (1 << TIMESTAMP_SHIFT) - 1) == dt
    assert snowflake_to_datetime(snowflake + (1 << TIMESTAMP_SHIFT)) == dt + MS


def test_sub_millisecond_precision_is_floored():
    dt = datetime.datetime(2024, 5, 17, 8, 30, 12, 345999, tzinfo=UTC)
    assert datetime_to_snowflake(dt) == datetime_to_snowflake(dt.replace(microsecond=345000))


def test_lower_bound_includes_message_at_exact_instant():
    since = datetime.datetime(2024, 2, 1, tzinfo=UTC)
    bound = since_date_lower_bound(since)
    first_possible_id = datetime_to_snowflake(since)
    # history pages are fetched strictly after the bound
    assert first_possible_id > bound


def test_lower_bound_excludes_previous_millisecond():
    since = datetime.datetime(2024, 2, 1, tzinfo=UTC)
    bound = since_date_lower_bound(since)
    last_id_before = datetime_to_snowflake(since - MS) + (1 << TIMESTAMP_SHIFT) - 1
    assert last_id_before <= bound
    assert last_id_before == bound


def test_as_utc():
    naive = datetime.datetime(2024, 1, 1, 12, 0)
    assert as_utc(naive).tzinfo is UTC
    assert as_utc(naive).hour == 12


def test_build_jump_url():
    assert build_jump_url(1, 2, 3) == "https://discord.com/channels/1/2/3"
    assert build_jump_url(None, 2, 3) == "https://discord.com/channels/@me/2/3"


def test_shorten():
    assert shorten("short", 10) == "short"
    assert shorten("a" * 12, 10) == "a" * 10 + "..."
    assert shorten(None, 10) == ""
