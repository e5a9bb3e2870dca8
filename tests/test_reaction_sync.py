import pytest

from bugtracker.reaction_sync import ReactionSync

from .conftest import CHANNEL


@pytest.fixture
def sync(db, gateway, engine):
    return ReactionSync(db, gateway, engine.locks)


async def open_thread(engine, gateway, make_message, content):
    issue = gateway.post(make_message(content))
    reply = gateway.post(make_message("can reproduce", author="bob", reply_to=issue))
    await engine.handle_message(issue)
    await engine.handle_message(reply)
    return issue, reply


async def test_done_reaction_on_reply_closes_bug(sync, engine, gateway, make_message, db):
    issue, reply = await open_thread(engine, gateway, make_message, "▶️ crash on save")
    other, _ = await open_thread(engine, gateway, make_message, "▶️ sidebar flickers")
    gateway.react(reply, "✅", "carol")

    assert await sync.sync_open_bugs() == 1

    assert (await db.get_bug_by_message_id(issue.id)).status == "fixed"
    assert (await db.get_bug_by_message_id(other.id)).status == "open"
    update = await db.get_update_by_message_id(reply.id)
    assert [(r.emoji, r.count, r.users) for r in update.reaction_list] == [("✅", 1, ["carol"])]


async def test_done_reaction_on_bug_message_closes_bug(sync, engine, gateway, make_message, db):
    issue, _ = await open_thread(engine, gateway, make_message, "▶️ crash on save")
    gateway.react(issue, "✅", "alice")

    bug = await db.get_bug_by_message_id(issue.id)
    assert await sync.sync_bug(bug)
    assert (await db.get_bug(bug.id)).status == "fixed"
    assert not await sync.sync_bug(bug)


async def test_other_reactions_are_recorded_without_closing(sync, engine, gateway, make_message, db):
    issue, reply = await open_thread(engine, gateway, make_message, "▶️ crash on save")
    gateway.react(issue, "👀", "dave")

    assert await sync.sync_open_bugs() == 0

    bug = await db.get_bug_by_message_id(issue.id)
    assert bug.status == "open"
    assert [r.emoji for r in bug.reaction_list] == ["👀"]


async def test_removed_reactions_disappear(sync, engine, gateway, make_message, db):
    issue, _ = await open_thread(engine, gateway, make_message, "▶️ crash on save")
    gateway.react(issue, "👀", "dave")
    await sync.sync_open_bugs()

    gateway.unreact(issue, "👀")
    await sync.sync_open_bugs()

    assert (await db.get_bug_by_message_id(issue.id)).reaction_list == []


async def test_deleted_messages_are_skipped(sync, engine, gateway, make_message, db):
    issue, reply = await open_thread(engine, gateway, make_message, "▶️ crash on save")
    gateway.react(issue, "👀", "dave")
    await sync.sync_open_bugs()

    gateway.deleted.add(issue.id)
    gateway.react(reply, "✅", "bob")

    assert await sync.sync_open_bugs() == 1
    bug = await db.get_bug_by_message_id(issue.id)
    assert bug.status == "fixed"
    # snapshot of the deleted message is kept as it was
    assert [r.emoji for r in bug.reaction_list] == ["👀"]


async def test_failing_bug_does_not_stop_the_sweep(sync, engine, gateway, make_message, db):
    broken, _ = await open_thread(engine, gateway, make_message, "▶️ crash on save")
    healthy, reply = await open_thread(engine, gateway, make_message, "▶️ sidebar flickers")
    gateway.broken.add(broken.id)
    gateway.react(reply, "✅", "bob")

    assert await sync.sync_open_bugs() == 1

    assert (await db.get_bug_by_message_id(broken.id)).status == "open"
    assert (await db.get_bug_by_message_id(healthy.id)).status == "fixed"
    assert not sync.locks.locked(CHANNEL)


async def test_no_open_bugs(sync):
    assert await sync.sync_open_bugs() == 0
