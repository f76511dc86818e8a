import asyncio

import pytest

from chatcore.domain import Message, MessageState
from chatcore.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimited,
    ServiceUnavailable,
    TransientStoreError,
    ValidationError,
)
from chatcore.pipeline import MessageDraft
from chatcore.quota import MemoryQuota
from chatcore.store import MemoryStore

from conftest import connect, make_gateway, run, seed_users


async def _direct(gw, a="alice", b="bob"):
    await seed_users(gw, a, b)
    return await gw.conversations.get_or_create_direct(a, b)


def test_sequence_numbers_are_gap_free_even_when_concurrent():
    async def scenario():
        gw = make_gateway()
        c = await _direct(gw)
        first = [await gw.pipeline.submit(c.id, "alice", MessageDraft(content=f"m{i}")) for i in range(5)]
        burst = await asyncio.gather(
            *(gw.pipeline.submit(c.id, "bob" if i % 2 else "alice", MessageDraft(content=f"b{i}")) for i in range(10))
        )
        await gw.pipeline.drain()
        return first, burst, await gw.store.get_conversation(c.id), gw.actors.active()

    first, burst, conv, held = run(scenario())
    assert [m.seq for m in first] == [1, 2, 3, 4, 5]
    assert sorted(m.seq for m in burst) == list(range(6, 16))
    assert conv.last_seq == 15
    assert held == 0


def test_direct_conversation_scenario():
    async def scenario():
        gw = make_gateway()
        c1 = await _direct(gw)
        hi = await gw.pipeline.submit(c1.id, "alice", MessageDraft(content="hi"))
        after_send = await gw.store.get_conversation(c1.id)
        await gw.conversations.mark_read(c1.id, "bob")
        after_read = await gw.store.get_conversation(c1.id)
        reply = await gw.pipeline.submit(c1.id, "bob", MessageDraft(content="hey", reply_to=hi.id))
        replies = await gw.pipeline.resolve_replies([reply])
        return hi, after_send, after_read, reply, replies

    hi, after_send, after_read, reply, replies = run(scenario())
    assert hi.seq == 1
    assert hi.state == MessageState.PERSISTED
    assert after_send.unread_for("bob") == 1
    assert after_send.unread_for("alice") == 0
    assert after_send.last_message_id == hi.id
    assert after_read.unread_for("bob") == 0
    assert reply.reply_to_id == hi.id
    assert replies[hi.id].content == "hi"


def test_submit_rejects_invalid_input_without_writing():
    async def scenario():
        gw = make_gateway()
        c = await _direct(gw)
        await seed_users(gw, "carol")
        other = await gw.conversations.get_or_create_direct("alice", "carol")
        foreign = await gw.pipeline.submit(other.id, "alice", MessageDraft(content="elsewhere"))
        errors = []
        for conv_id, sender, draft in [
            (c.id, "alice", MessageDraft(content="   ")),
            (c.id, "alice", MessageDraft(content="x", message_type="sticker")),
            (c.id, "carol", MessageDraft(content="intruder")),
            ("missing", "alice", MessageDraft(content="x")),
            (c.id, "alice", MessageDraft(content="x", reply_to=foreign.id)),
            (c.id, "alice", MessageDraft(content="x", reply_to="nope")),
        ]:
            with pytest.raises(ValidationError):
                await gw.pipeline.submit(conv_id, sender, draft)
            errors.append(conv_id)
        media = await gw.pipeline.submit(c.id, "alice", MessageDraft(message_type="image", media_url="/blobs/x"))
        return await gw.store.count_messages(c.id), media, await gw.store.get_conversation(c.id)

    count, media, conv = run(scenario())
    assert count == 1
    assert media.seq == 1
    assert conv.unread_for("bob") == 1


def test_fan_out_goes_to_other_participants_in_order():
    async def scenario():
        gw = make_gateway()
        c = await _direct(gw)
        bob1 = await connect(gw, "bob")
        bob2 = await connect(gw, "bob")
        alice = await connect(gw, "alice")
        for i in range(5):
            await gw.pipeline.submit(c.id, "alice", MessageDraft(content=str(i)))
        await gw.pipeline.drain()
        msgs = await gw.store.list_messages(c.id)
        return bob1, bob2, alice, msgs

    bob1, bob2, alice, msgs = run(scenario())
    for s in (bob1, bob2):
        assert [d["seq"] for d in s.data("new_message")] == [1, 2, 3, 4, 5]
    assert alice.events("new_message") == []
    # Online recipient gets a delivery record right away.
    assert all(m.delivered_at("bob") is not None for m in msgs)
    assert all(m.state == MessageState.DELIVERED for m in msgs)
    assert len(alice.data("message_delivered")) == 5


def test_offline_recipient_gets_delivery_on_history_fetch():
    async def scenario():
        gw = make_gateway()
        c = await _direct(gw)
        for i in range(3):
            await gw.pipeline.submit(c.id, "alice", MessageDraft(content=f"while away {i}"))
        await gw.pipeline.drain()
        before = await gw.store.list_messages(c.id)
        page = await gw.pipeline.history(c.id, "bob", page=1, limit=50)
        after = await gw.store.list_messages(c.id)
        return before, page, after

    before, page, after = run(scenario())
    assert all(m.delivered_at("bob") is None for m in before)
    assert [m.content for m in page.messages] == ["while away 0", "while away 1", "while away 2"]
    assert page.has_more is False
    assert all(m.delivered_at("bob") is not None for m in page.messages)
    assert all(m.delivered_at("bob") is not None for m in after)


def test_history_pages_newest_first():
    async def scenario():
        gw = make_gateway()
        c = await _direct(gw)
        for i in range(5):
            await gw.pipeline.submit(c.id, "alice", MessageDraft(content=str(i)))
        p1 = await gw.pipeline.history(c.id, "alice", page=1, limit=2)
        p3 = await gw.pipeline.history(c.id, "alice", page=3, limit=2)
        with pytest.raises(ForbiddenError):
            await seed_users(gw, "eve")
            await gw.pipeline.history(c.id, "eve")
        return p1, p3

    p1, p3 = run(scenario())
    assert [m.seq for m in p1.messages] == [4, 5] and p1.has_more is True
    assert [m.seq for m in p3.messages] == [1] and p3.has_more is False


def test_delete_clears_content_and_is_idempotent():
    async def scenario():
        gw = make_gateway()
        c = await _direct(gw)
        bob = await connect(gw, "bob")
        m = await gw.pipeline.submit(c.id, "alice", MessageDraft(content="secret", message_type="image", media_url="/blobs/1"))
        with pytest.raises(ForbiddenError):
            await gw.pipeline.delete(m.id, "bob")
        with pytest.raises(NotFoundError):
            await gw.pipeline.delete("missing", "alice")
        d1 = await gw.pipeline.delete(m.id, "alice")
        d2 = await gw.pipeline.delete(m.id, "alice")
        await gw.pipeline.drain()
        return m, d1, d2, bob

    m, d1, d2, bob = run(scenario())
    assert d1.is_deleted and d1.content == "" and d1.media_url is None
    assert (d1.id, d1.seq, d1.created_at, d1.updated_at) == (m.id, m.seq, m.created_at, m.updated_at)
    assert d2.is_deleted
    assert bob.data("message_deleted") == [{"messageId": m.id, "conversationId": m.conversation_id}]


def test_reactions_replace_and_fan_out_full_set():
    async def scenario():
        gw = make_gateway()
        c = await _direct(gw)
        alice = await connect(gw, "alice")
        m = await gw.pipeline.submit(c.id, "alice", MessageDraft(content="react to me"))
        await gw.pipeline.react(m.id, "bob", "👍")
        await gw.pipeline.react(m.id, "alice", "😂")
        after = await gw.pipeline.react(m.id, "bob", "❤️")
        removed = await gw.pipeline.unreact(m.id, "alice")
        with pytest.raises(ForbiddenError):
            await seed_users(gw, "eve")
            await gw.pipeline.react(m.id, "eve", "👍")
        return after, removed, alice

    after, removed, alice = run(scenario())
    assert [(r.user_id, r.emoji) for r in after.reactions] == [("bob", "❤️"), ("alice", "😂")]
    assert [(r.user_id, r.emoji) for r in removed.reactions] == [("bob", "❤️")]
    frames = alice.data("message_reaction")
    assert frames[-2]["reactions"] == [{"user": "bob", "emoji": "❤️"}, {"user": "alice", "emoji": "😂"}]
    assert frames[-1]["reactions"] == [{"user": "bob", "emoji": "❤️"}]


def test_react_to_deleted_message_fails():
    async def scenario():
        gw = make_gateway()
        c = await _direct(gw)
        m = await gw.pipeline.submit(c.id, "alice", MessageDraft(content="gone"))
        await gw.pipeline.delete(m.id, "alice")
        with pytest.raises(ValidationError):
            await gw.pipeline.react(m.id, "bob", "👍")

    run(scenario())


def test_forward_copies_into_each_target():
    async def scenario():
        gw = make_gateway()
        c = await _direct(gw)
        await seed_users(gw, "carol")
        group = await gw.conversations.create_group("bob", "crew", ["carol", "alice"])
        m = await gw.pipeline.submit(c.id, "alice", MessageDraft(content="pass it on"))
        copies = await gw.pipeline.forward(m.id, "bob", [group.id, group.id])
        with pytest.raises(ValidationError):
            other = await gw.conversations.get_or_create_direct("alice", "carol")
            await gw.pipeline.forward(m.id, "bob", [other.id])
        return m, copies, await gw.store.get_conversation(group.id)

    m, copies, group = run(scenario())
    assert len(copies) == 1
    copy = copies[0]
    assert copy.conversation_id == group.id and copy.sender_id == "bob"
    assert copy.content == "pass it on" and copy.forwarded_from_id == "alice"
    assert copy.seq == 1
    assert group.unread_for("carol") == 1 and group.unread_for("bob") == 0


def test_quota_rejects_bursts():
    async def scenario():
        gw = make_gateway()
        gw.pipeline.quota = MemoryQuota(2)
        c = await _direct(gw)
        await gw.pipeline.submit(c.id, "alice", MessageDraft(content="1"))
        await gw.pipeline.submit(c.id, "alice", MessageDraft(content="2"))
        with pytest.raises(RateLimited) as exc:
            await gw.pipeline.submit(c.id, "alice", MessageDraft(content="3"))
        await gw.pipeline.submit(c.id, "bob", MessageDraft(content="other sender"))
        return exc.value

    err = run(scenario())
    assert err.details["retry_after"] >= 1


def test_message_events_published_for_webhooks():
    async def scenario():
        gw = make_gateway()
        seen = []
        sub = gw.pipeline.message_events.subscribe(seen.append)
        c = await _direct(gw)
        m = await gw.pipeline.submit(c.id, "alice", MessageDraft(content="hook"))
        await gw.pipeline.delete(m.id, "alice")
        await gw.pipeline.drain()
        sub.unsubscribe()
        await gw.pipeline.submit(c.id, "alice", MessageDraft(content="unheard"))
        await gw.pipeline.drain()
        return m, seen

    m, seen = run(scenario())
    assert [(e.kind, e.message_id) for e in seen] == [("created", m.id), ("deleted", m.id)]


def test_quota_only_counts_accepted_submits():
    async def scenario():
        gw = make_gateway()
        gw.pipeline.quota = MemoryQuota(1)
        c = await _direct(gw)
        await seed_users(gw, "carol")
        for conv_id in ("missing", "missing", c.id):
            sender = "carol" if conv_id == c.id else "alice"
            with pytest.raises(ValidationError):
                await gw.pipeline.submit(conv_id, sender, MessageDraft(content="rejected"))
        return await gw.pipeline.submit(c.id, "alice", MessageDraft(content="accepted"))

    assert run(scenario()).seq == 1


class ConversationPatchFails(MemoryStore):
    def __init__(self):
        super().__init__()
        self.broken = False

    async def patch_conversation(self, conversation_id, **fields):
        if self.broken:
            raise TransientStoreError("conversation write lost")
        return await super().patch_conversation(conversation_id, **fields)


def test_failed_conversation_update_rolls_back_the_message():
    store = ConversationPatchFails()

    async def scenario():
        gw = make_gateway(store)
        c = await _direct(gw)
        bob = await connect(gw, "bob")
        store.broken = True
        with pytest.raises(ServiceUnavailable):
            await gw.pipeline.submit(c.id, "alice", MessageDraft(content="hi"))
        await gw.pipeline.drain()
        after_failure = (await gw.store.count_messages(c.id), await gw.store.get_conversation(c.id))
        store.broken = False
        retried = await gw.pipeline.submit(c.id, "alice", MessageDraft(content="hi"))
        await gw.pipeline.drain()
        return after_failure, retried, await gw.pipeline.history(c.id, "alice"), bob

    (count, conv), retried, page, bob = run(scenario())
    assert count == 0
    assert conv.last_message_id is None and conv.unread_for("bob") == 0
    assert retried.seq == 1
    assert [(m.seq, m.content) for m in page.messages] == [(1, "hi")]
    assert [d["id"] for d in bob.data("new_message")] == [retried.id]


def test_sequence_conflict_retries_with_the_next_free_seq():
    async def scenario():
        gw = make_gateway()
        c = await _direct(gw)
        # Lands behind the conversation's last_seq, as a lost write would.
        await gw.store.put_message(Message(id="stray", conversation_id=c.id, sender_id="bob", seq=1, content="stray"))
        m = await gw.pipeline.submit(c.id, "alice", MessageDraft(content="after"))
        return m, await gw.store.get_conversation(c.id)

    m, conv = run(scenario())
    assert m.seq == 2
    assert conv.last_seq == 2 and conv.last_message_id == m.id


class AlwaysConflicts(MemoryStore):
    def __init__(self):
        super().__init__()
        self.inserts = 0

    async def put_message(self, message):
        self.inserts += 1
        raise ConflictError("Sequence number already assigned")


def test_sequence_conflict_is_raised_when_the_retry_collides_too():
    store = AlwaysConflicts()

    async def scenario():
        gw = make_gateway(store)
        c = await _direct(gw)
        with pytest.raises(ConflictError):
            await gw.pipeline.submit(c.id, "alice", MessageDraft(content="never lands"))
        return await gw.store.get_conversation(c.id)

    conv = run(scenario())
    assert store.inserts == 2
    assert conv.last_seq == 0 and conv.last_message_id is None


def test_history_fetch_records_delivery_for_deleted_messages_too():
    async def scenario():
        gw = make_gateway()
        c = await _direct(gw)
        kept = await gw.pipeline.submit(c.id, "alice", MessageDraft(content="kept"))
        gone = await gw.pipeline.submit(c.id, "alice", MessageDraft(content="oops"))
        await gw.pipeline.delete(gone.id, "alice")
        page = await gw.pipeline.history(c.id, "bob")
        return kept, gone, page

    kept, gone, page = run(scenario())
    by_id = {m.id: m for m in page.messages}
    assert by_id[kept.id].delivered_at("bob") is not None
    assert by_id[gone.id].delivered_at("bob") is not None
    assert by_id[gone.id].is_deleted and by_id[gone.id].content == ""
