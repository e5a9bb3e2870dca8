import pytest

from bugtracker.markers import (
    BugType,
    MessageKind,
    classify,
    derive_type,
    has_done_reaction,
    is_done_emoji,
)
from bugtracker.models import Reaction


@pytest.mark.parametrize("text", [
    "▶️ login button is broken on mobile",
    "▶ login button is broken on mobile",
    "   ▶️ leading whitespace is trimmed",
    "▶️",
])
def test_new_issue_marker_at_start(text):
    assert classify(text) is MessageKind.NEW_ISSUE


def test_new_issue_wins_over_completion():
    assert classify("▶️ the ✅ button does nothing") is MessageKind.NEW_ISSUE


@pytest.mark.parametrize("text", [
    "✅ fixed in the latest build",
    "fixed in the latest build ✅",
    "pushed a patch, ✅ now",
])
def test_done_marker_anywhere(text):
    assert classify(text) is MessageKind.COMPLETION


@pytest.mark.parametrize("text", [
    "",
    "anyone else seeing this?",
    "see ▶️ above",
    "white_check_mark",
])
def test_plain(text):
    assert classify(text) is MessageKind.PLAIN


def test_classify_handles_none():
    assert classify(None) is MessageKind.PLAIN


@pytest.mark.parametrize("text", [
    "▶️ login button is broken on mobile",
    "▶️ App CRASHES on launch",
    "▶️ export doesn't work",
    "▶️ export doesnt work",
    "▶️ Error 500 on the settings page",
    "▶️ upload keeps failing",
    "▶️ weird issue with fonts",
])
def test_derive_type_bug(text):
    assert derive_type(text) is BugType.BUG


@pytest.mark.parametrize("text", [
    "▶️ add a dark mode",
    "▶️ let me pin my favourite projects",
])
def test_derive_type_request(text):
    assert derive_type(text) is BugType.REQUEST


def test_done_emoji_names():
    assert is_done_emoji("✅")
    assert is_done_emoji("white_check_mark")
    assert not is_done_emoji("❌")
    assert not is_done_emoji("heavy_check_mark")


def test_has_done_reaction():
    assert has_done_reaction([Reaction("👍", 2), Reaction("✅", 1)])
    assert not has_done_reaction([Reaction("👍", 2)])
    assert not has_done_reaction([])
