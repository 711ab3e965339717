from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from communityhub.service.monitoring import RecordingMonitoringSink
from communityhub.service.sessions import SessionManager, parse_device_info


class DateTimeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


@pytest.fixture
def clock():
    return DateTimeClock()


@pytest.fixture
def monitoring():
    return RecordingMonitoringSink()


@pytest.fixture
def manager(memory_store, security_config, monitoring, clock):
    return SessionManager(memory_store, security_config, monitoring, clock=clock)


@pytest.mark.parametrize(
    "user_agent, expected",
    [
        (None, "Unknown Device"),
        ("", "Unknown Device"),
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile", "iPhone"),
        ("Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X)", "iPad"),
        ("Mozilla/5.0 (Linux; Android 14; Pixel 8) Mobile", "Android Device"),
        ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "Windows Computer"),
        ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)", "Mac Computer"),
        ("Mozilla/5.0 (X11; Linux x86_64)", "Linux Computer"),
        ("curl/8.4.0", "Unknown Device"),
    ],
)
def test_parse_device_info(user_agent, expected):
    assert parse_device_info(user_agent) == expected


async def test_list_sessions_orders_by_recent_activity(manager, memory_store, clock):
    user = await memory_store.create_user("bob@example.com")
    first = await manager.create_session(user.id, user_agent="Mozilla/5.0 (Windows NT 10.0)")
    clock.advance(minutes=5)
    second = await manager.create_session(user.id)
    clock.advance(minutes=5)
    third = await manager.create_session(user.id)

    clock.advance(minutes=90)
    await manager.refresh(first.id)

    listed = await manager.list_sessions(user.id)
    assert [sess.id for sess in listed] == [first.id, third.id, second.id]
    assert listed[0].device_info == "Windows Computer"


async def test_sessions_of_other_users_are_not_listed(manager, memory_store):
    alice = await memory_store.create_user("alice@example.com")
    bob = await memory_store.create_user("bob@example.com")
    await manager.create_session(alice.id)
    await manager.create_session(bob.id)
    listed = await manager.list_sessions(alice.id)
    assert {sess.user_id for sess in listed} == {alice.id}


async def test_revoke_all_other_sessions_keeps_current(manager, memory_store):
    user = await memory_store.create_user("carol@example.com")
    current = await manager.create_session(user.id)
    for _ in range(3):
        await manager.create_session(user.id)

    assert await manager.revoke_all_other_sessions(current.id, user.id) == 3
    assert await manager.revoke_all_other_sessions(current.id, user.id) == 0

    listed = await manager.list_sessions(user.id)
    assert [sess.id for sess in listed] == [current.id]
    assert await manager.get_active_session(current.id) is not None


async def test_revoke_session_is_scoped_to_owner(manager, memory_store):
    owner = await memory_store.create_user("owner@example.com")
    intruder = await memory_store.create_user("intruder@example.com")
    target = await manager.create_session(owner.id)

    assert await manager.revoke_session(target.id, intruder.id) is False
    assert await manager.get_active_session(target.id) is not None

    assert await manager.revoke_session(target.id, owner.id) is True
    assert await manager.revoke_session(target.id, owner.id) is False
    assert await manager.get_active_session(target.id) is None
    assert await manager.refresh(target.id) is None


async def test_refresh_slides_only_after_idle_threshold(manager, memory_store, clock):
    user = await memory_store.create_user("dana@example.com")
    session = await manager.create_session(user.id)
    original_expiry = session.expires_at

    clock.advance(minutes=30)
    unchanged = await manager.refresh(session.id)
    assert unchanged.expires_at == original_expiry

    clock.advance(minutes=31)
    slid = await manager.refresh(session.id)
    assert slid.last_activity == clock.now
    assert slid.expires_at == clock.now + timedelta(days=30)


async def test_forced_refresh_always_slides(manager, memory_store, clock):
    user = await memory_store.create_user("erin@example.com")
    session = await manager.create_session(user.id)
    clock.advance(minutes=1)
    refreshed = await manager.refresh(session.id, force=True)
    assert refreshed.expires_at == clock.now + timedelta(days=30)


async def test_expired_session_is_revoked_on_refresh(manager, memory_store, clock):
    user = await memory_store.create_user("frank@example.com")
    session = await manager.create_session(user.id)
    clock.advance(days=31)
    assert await manager.refresh(session.id) is None
    stored = await memory_store.get_session(session.id)
    assert stored.is_revoked


async def test_refresh_unknown_or_missing_session(manager):
    assert await manager.refresh(None) is None
    assert await manager.refresh("no-such-session") is None
    assert await manager.get_active_session(None) is None


async def test_cleanup_removes_each_stale_session_once(manager, memory_store, monitoring, clock):
    user = await memory_store.create_user("gina@example.com")
    keep = await manager.create_session(user.id)
    revoked = await manager.create_session(user.id)
    await manager.revoke_session(revoked.id, user.id)
    expired = await memory_store.create_session(
        replace(
            await manager.create_session(user.id),
            id="expired-session",
            expires_at=clock.now - timedelta(minutes=1),
        )
    )

    assert await manager.cleanup_expired() == 2
    assert await manager.cleanup_expired() == 0
    assert await memory_store.get_session(revoked.id) is None
    assert await memory_store.get_session(expired.id) is None
    assert await memory_store.get_session(keep.id) is not None

    cleanup_events = [fields for level, name, fields in monitoring.events if name == "session_cleanup_completed"]
    assert [fields["removed"] for fields in cleanup_events] == [2, 0]


async def test_session_cap_revokes_least_recently_active(manager, memory_store, security_config, clock):
    capped = SessionManager(
        memory_store, replace(security_config, max_sessions_per_user=2), RecordingMonitoringSink(), clock=clock
    )
    user = await memory_store.create_user("hank@example.com")
    oldest = await capped.create_session(user.id)
    clock.advance(minutes=1)
    middle = await capped.create_session(user.id)
    clock.advance(minutes=1)
    newest = await capped.create_session(user.id)

    listed = await capped.list_sessions(user.id)
    assert [sess.id for sess in listed] == [newest.id, middle.id]
    assert (await memory_store.get_session(oldest.id)).is_revoked


async def test_sign_out_drops_pending_challenge(manager, memory_store):
    from communityhub.storage.models import PendingTwoFactorChallenge

    user = await memory_store.create_user("ivy@example.com")
    session = await manager.create_session(user.id)
    await memory_store.save_pending_challenge(
        PendingTwoFactorChallenge(session_id=session.id, user_id=user.id, secret="JBSWY3DPEHPK3PXP")
    )
    assert await manager.sign_out(session.id, user.id) is True
    assert await memory_store.get_pending_challenge(session.id) is None
    assert await manager.get_active_session(session.id) is None
