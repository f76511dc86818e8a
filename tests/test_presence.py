from datetime import datetime

from chatcore.events import PresenceChange

from conftest import RecordingSession, connect, make_gateway, run, seed_users


def test_online_and_offline_go_to_contacts_only():
    async def scenario():
        gw = make_gateway()
        await seed_users(gw, "alice", "bob", "carol")
        await gw.conversations.get_or_create_direct("alice", "bob")
        bob = await connect(gw, "bob")
        carol = await connect(gw, "carol")
        alice = RecordingSession("alice")
        await gw.join(alice)
        online = gw.presence.status_of("alice")
        await gw.disconnect(alice)
        offline = gw.presence.status_of("alice")
        stored = await gw.store.get_user("alice")
        return bob, carol, online, offline, stored

    bob, carol, online, offline, stored = run(scenario())
    assert bob.data("user_online") == [{"userId": "alice"}]
    offline_frames = bob.data("user_offline")
    assert len(offline_frames) == 1 and offline_frames[0]["userId"] == "alice"
    assert offline_frames[0]["lastSeen"]
    assert carol.events("user_online") == [] and carol.events("user_offline") == []
    assert online.online is True and online.last_seen is None
    assert offline.online is False and offline.last_seen is not None
    assert stored.is_online is False and stored.last_seen == offline.last_seen


def test_stale_transition_is_ignored():
    async def scenario():
        gw = make_gateway()
        await seed_users(gw, "alice")
        t = datetime(2024, 1, 1)
        await gw.presence.on_presence_change(PresenceChange("alice", False, t, version=2))
        await gw.presence.on_presence_change(PresenceChange("alice", True, t, version=1))
        return gw.presence.status_of("alice")

    status = run(scenario())
    assert status.online is False
    assert status.last_seen == datetime(2024, 1, 1)


def test_lookup_falls_back_to_persisted_last_seen():
    async def scenario():
        gw = make_gateway()
        await seed_users(gw, "dave")
        await gw.store.patch_user("dave", last_seen=datetime(2023, 5, 6, 7, 8))
        return gw.presence.status_of("dave"), await gw.presence.lookup("dave"), await gw.presence.lookup("nobody")

    local, looked_up, unknown = run(scenario())
    assert local.last_seen is None
    assert looked_up.online is False and looked_up.last_seen == datetime(2023, 5, 6, 7, 8)
    assert unknown.online is False and unknown.last_seen is None


def test_gateway_close_detaches_presence_tracking():
    async def scenario():
        gw = make_gateway()
        await seed_users(gw, "alice")
        await gw.start()
        before = gw.registry.presence_changes.subscriber_count
        await gw.close()
        after = gw.registry.presence_changes.subscriber_count
        await connect(gw, "alice")
        return before, after, await gw.store.get_user("alice")

    before, after, alice = run(scenario())
    assert (before, after) == (1, 0)
    assert alice.is_online is False
