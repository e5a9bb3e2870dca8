from bugtracker.ambient import AmbientClassifier
from bugtracker.analyzer import AttachResult, Confidence
from bugtracker.outcome import Outcome
from bugtracker.recent import RecentContextCache

from .conftest import CHANNEL, OTHER_CHANNEL, FakeAnalyzer


def attach(bug_id, should_add=True):
    return AttachResult(should_add=should_add, bug_id=bug_id, confidence=Confidence.MEDIUM, reasoning="related")


async def test_without_analyzer_nothing_is_attached(db, add_bug, make_message):
    await add_bug("▶️ sidebar flickers")
    classifier = AmbientClassifier(db)

    assert await classifier.classify_message(make_message("it flickers for me too"), []) is None


async def test_no_candidates_skips_the_analyzer(db, make_message):
    analyzer = FakeAnalyzer(attach=attach(1))
    classifier = AmbientClassifier(db, analyzer)

    assert await classifier.classify_message(make_message("hello everyone"), []) is None
    assert analyzer.attach_calls == []


async def test_attaches_to_offered_bug(db, add_bug, make_message):
    bug = await add_bug("▶️ sidebar flickers")
    analyzer = FakeAnalyzer(attach=attach(bug.id))
    classifier = AmbientClassifier(db, analyzer)
    message = make_message("it flickers for me too", author="bob")

    chosen = await classifier.classify_message(message, [])
    assert chosen.id == bug.id
    assert await classifier.attach(message, chosen) is Outcome.ATTACHED_CONTEXT
    assert await classifier.attach(message, chosen) is Outcome.DUPLICATE
    assert [u.author_name for u in await db.get_bug_updates(bug.id)] == ["bob"]


async def test_hallucinated_bug_id_is_rejected(db, add_bug, make_message):
    await add_bug("▶️ sidebar flickers")
    other_channel_bug = await add_bug("▶️ not offered", channel_id=OTHER_CHANNEL)
    classifier = AmbientClassifier(db, FakeAnalyzer(attach=attach(other_channel_bug.id)))

    assert await classifier.classify_message(make_message("it flickers"), []) is None


async def test_decline_is_respected(db, add_bug, make_message):
    bug = await add_bug("▶️ sidebar flickers")
    classifier = AmbientClassifier(db, FakeAnalyzer(attach=attach(bug.id, should_add=False)))

    assert await classifier.classify_message(make_message("lunch anyone?"), []) is None


async def test_candidates_are_the_five_most_recently_active_open_bugs(db, add_bug, make_message):
    bugs = [await add_bug(f"▶️ bug number {i}") for i in range(7)]
    await db.mark_fixed(bugs[6].id)
    await add_bug("▶️ elsewhere", channel_id=OTHER_CHANNEL)
    analyzer = FakeAnalyzer()
    classifier = AmbientClassifier(db, analyzer)

    await classifier.classify_message(make_message("hmm"), [])

    assert analyzer.attach_calls[0]["candidates"] == [bugs[i].id for i in (5, 4, 3, 2, 1)]


async def test_recent_context_is_passed_through(db, add_bug, make_message):
    bug = await add_bug("▶️ sidebar flickers")
    cache = RecentContextCache()
    earlier = make_message("is the sidebar flickering for anyone?", author="carol")
    cache.push(CHANNEL, earlier.author_name, earlier.content, earlier.created_at, bug.id)
    analyzer = FakeAnalyzer()
    classifier = AmbientClassifier(db, analyzer)

    await classifier.classify_message(make_message("yes, on firefox", author="dave"), cache.get(CHANNEL))

    call = analyzer.attach_calls[0]
    assert call["author"] == "dave"
    assert [(m.author_name, m.bug_id) for m in call["recent"]] == [("carol", bug.id)]
