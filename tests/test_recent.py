import datetime

import pytest

from bugtracker.recent import RecentContextCache

from .conftest import BASE_TIME, CHANNEL, OTHER_CHANNEL


def push_many(cache, channel_id, count):
    for i in range(count):
        cache.push(channel_id, f"user{i}", f"message {i}", BASE_TIME + datetime.timedelta(seconds=i))


def test_keeps_last_ten_by_default():
    cache = RecentContextCache()
    push_many(cache, CHANNEL, 15)

    recent = cache.get(CHANNEL)
    assert len(recent) == 10
    assert [m.content for m in recent] == [f"message {i}" for i in range(5, 15)]


def test_channels_are_independent():
    cache = RecentContextCache(capacity=3)
    push_many(cache, CHANNEL, 5)
    cache.push(OTHER_CHANNEL, "bob", "hello", BASE_TIME, bug_id=7)

    assert len(cache.get(CHANNEL)) == 3
    assert [(m.author_name, m.bug_id) for m in cache.get(OTHER_CHANNEL)] == [("bob", 7)]
    assert cache.get(12345) == []
    assert len(cache) == 4


def test_get_returns_a_copy():
    cache = RecentContextCache(capacity=3)
    push_many(cache, CHANNEL, 2)
    snapshot = cache.get(CHANNEL)
    cache.push(CHANNEL, "carol", "later", BASE_TIME)
    assert len(snapshot) == 2


def test_clear():
    cache = RecentContextCache()
    push_many(cache, CHANNEL, 2)
    push_many(cache, OTHER_CHANNEL, 2)

    cache.clear(CHANNEL)
    assert cache.get(CHANNEL) == []
    assert len(cache.get(OTHER_CHANNEL)) == 2

    cache.clear()
    assert len(cache) == 0


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        RecentContextCache(capacity=0)
