import pytest

from chatcore.errors import ForbiddenError
from chatcore.typing_indicators import TypingCoordinator

from conftest import connect, make_gateway, run, seed_users


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


async def _setup():
    gw = make_gateway()
    await seed_users(gw, "alice", "bob")
    c = await gw.conversations.get_or_create_direct("alice", "bob")
    clock = FakeClock()
    typing = TypingCoordinator(gw.registry, gw.conversations, ttl=2.0, clock=clock)
    bob = await connect(gw, "bob")
    alice = await connect(gw, "alice")
    return gw, c, clock, typing, bob, alice


def test_repeated_true_collapses_to_two_broadcasts():
    async def scenario():
        gw, c, clock, typing, bob, alice = await _setup()
        await typing.set_typing(c.id, "alice", True)
        clock.now += 1.0
        await typing.set_typing(c.id, "alice", True)
        clock.now += 0.5
        await typing.set_typing(c.id, "alice", False)
        return c, bob, alice

    c, bob, alice = run(scenario())
    assert bob.data("typing") == [
        {"conversationId": c.id, "userId": "alice", "isTyping": True},
        {"conversationId": c.id, "userId": "alice", "isTyping": False},
    ]
    assert alice.events("typing") == []


def test_ttl_expiry_synthesizes_stop():
    async def scenario():
        gw, c, clock, typing, bob, alice = await _setup()
        await typing.set_typing(c.id, "alice", True)
        clock.now += 1.9
        swept_early = typing.sweep()
        assert typing.is_typing(c.id, "alice")
        clock.now += 0.2
        swept = typing.sweep()
        stop_again = await typing.set_typing(c.id, "alice", False)
        return swept_early, swept, stop_again, bob

    swept_early, swept, stop_again, bob = run(scenario())
    assert swept_early == 0
    assert swept == 1
    assert stop_again is False
    assert [d["isTyping"] for d in bob.data("typing")] == [True, False]


def test_expired_but_unswept_entry_settles_before_new_start():
    async def scenario():
        gw, c, clock, typing, bob, alice = await _setup()
        await typing.set_typing(c.id, "alice", True)
        clock.now += 5.0
        await typing.set_typing(c.id, "alice", True)
        return bob

    bob = run(scenario())
    assert [d["isTyping"] for d in bob.data("typing")] == [True, False, True]


def test_disconnect_clears_typing_and_outsiders_are_rejected():
    async def scenario():
        gw, c, clock, typing, bob, alice = await _setup()
        await seed_users(gw, "eve")
        with pytest.raises(ForbiddenError):
            await typing.set_typing(c.id, "eve", True)
        await typing.set_typing(c.id, "alice", True)
        cleared = typing.clear_user("alice")
        return cleared, typing.is_typing(c.id, "alice"), bob

    cleared, still, bob = run(scenario())
    assert cleared == 1
    assert still is False
    assert [d["isTyping"] for d in bob.data("typing")] == [True, False]
