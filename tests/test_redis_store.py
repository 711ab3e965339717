import json
import os
from datetime import timedelta

import pytest
import redis
from redis.exceptions import ConnectionError as RedisConnectionError

from communityhub.service.errors import StoreUnavailableError
from communityhub.storage.models import (
    PendingTwoFactorChallenge,
    Session,
    TwoFactorEnrollment,
    utcnow,
)
from communityhub.storage.redis_store import RedisStore

REDIS_TEST_URL = os.getenv("REDIS_TEST_URL", "redis://localhost:6379/15")


def _redis_available() -> bool:
    try:
        client = redis.Redis.from_url(REDIS_TEST_URL, socket_connect_timeout=0.5)
        try:
            return bool(client.ping())
        finally:
            client.close()
    except redis.exceptions.RedisError:
        return False


requires_redis = pytest.mark.skipif(not _redis_available(), reason="Redis not reachable")


class BrokenClient:
    """Every command fails as if the server went away."""

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        return fail

    def pipeline(self):
        raise RedisConnectionError("connection refused")


async def test_backend_errors_become_store_unavailable():
    store = RedisStore(
        "redis://unused", two_factor_encryption_key="k" * 32, client=BrokenClient()
    )
    with pytest.raises(StoreUnavailableError) as excinfo:
        await store.get_session("abc")
    assert excinfo.value.operation == "get_session"
    assert excinfo.value.status_code == 503
    assert isinstance(excinfo.value.cause, RedisConnectionError)

    with pytest.raises(StoreUnavailableError):
        await store.get_enrollment("user")
    assert await store.ping() is False


async def _fresh_store():
    store = RedisStore(REDIS_TEST_URL, two_factor_encryption_key="redis-test-encryption-key")
    await store.client.flushdb()
    return store


@requires_redis
async def test_session_round_trip_and_listing():
    store = await _fresh_store()
    try:
        user = await store.create_user("redis@example.com")
        older = Session.new(user.id, now=utcnow() - timedelta(minutes=10))
        newer = Session.new(user.id)
        await store.create_session(older)
        await store.create_session(newer)

        loaded = await store.get_session(newer.id)
        assert loaded.user_id == user.id
        assert loaded.expires_at == newer.expires_at

        listed = await store.list_sessions(user.id)
        assert [sess.id for sess in listed] == [newer.id, older.id]

        assert await store.mark_session_verified(older.id) is True
        assert (await store.get_session(older.id)).two_factor_verified is True
    finally:
        await store.close()


@requires_redis
async def test_revocation_counts_each_session_once():
    store = await _fresh_store()
    try:
        user = await store.create_user("revoke@example.com")
        keep = Session.new(user.id)
        await store.create_session(keep)
        others = [Session.new(user.id) for _ in range(3)]
        for sess in others:
            await store.create_session(sess)

        assert await store.revoke_session(others[0].id, user_id="someone-else") is False
        assert await store.revoke_session(others[0].id, user_id=user.id) is True
        assert await store.revoke_session(others[0].id, user_id=user.id) is False
        assert await store.revoke_other_sessions(user.id, keep.id) == 2
        assert await store.revoke_other_sessions(user.id, keep.id) == 0
        assert [sess.id for sess in await store.list_sessions(user.id)] == [keep.id]
    finally:
        await store.close()


@requires_redis
async def test_cleanup_removes_expired_sessions_once():
    store = await _fresh_store()
    try:
        user = await store.create_user("cleanup@example.com")
        live = Session.new(user.id, ttl_minutes=60 * 24 * 60)
        await store.create_session(live)
        stale = Session.new(user.id)
        await store.create_session(stale)

        later = stale.expires_at + timedelta(seconds=1)
        assert await store.delete_expired_sessions(later) == 1
        assert await store.delete_expired_sessions(later) == 0
        assert await store.get_session(stale.id) is None
        assert [sess.id for sess in await store.list_sessions(user.id)] == [live.id]
    finally:
        await store.close()


@requires_redis
async def test_backup_codes_are_consumed_once():
    store = await _fresh_store()
    try:
        await store.save_enrollment(
            TwoFactorEnrollment(
                user_id="u1", secret="JBSWY3DPEHPK3PXP", enabled=True, backup_code_hashes=["a", "b"]
            )
        )
        raw = await store.client.get("2fa:u1")
        assert "JBSWY3DPEHPK3PXP" not in raw

        enrollment = await store.get_enrollment("u1")
        assert enrollment.secret == "JBSWY3DPEHPK3PXP"
        assert enrollment.backup_code_hashes == ["a", "b"]

        assert await store.consume_backup_code("u1", "a") is True
        assert await store.consume_backup_code("u1", "a") is False
        assert (await store.get_enrollment("u1")).backup_code_hashes == ["b"]

        assert await store.replace_backup_codes("u1", ["c"]) is True
        assert (await store.get_enrollment("u1")).backup_code_hashes == ["c"]
        await store.delete_enrollment("u1")
        assert await store.get_enrollment("u1") is None
    finally:
        await store.close()


@requires_redis
async def test_pending_challenge_promotes_once():
    store = await _fresh_store()
    try:
        await store.save_pending_challenge(
            PendingTwoFactorChallenge(session_id="s1", user_id="u1", secret="JBSWY3DPEHPK3PXP")
        )
        assert await store.promote_pending_challenge("s1") is True
        assert await store.promote_pending_challenge("s1") is False
        assert (await store.get_pending_challenge("s1")).is_verified is True
        await store.delete_pending_challenge("s1")
        assert await store.get_pending_challenge("s1") is None
        assert await store.promote_pending_challenge("missing") is False
    finally:
        await store.close()


@requires_redis
async def test_touch_keeps_a_verification_written_mid_update(monkeypatch):
    store = await _fresh_store()
    writer = redis.Redis.from_url(REDIS_TEST_URL, decode_responses=True)
    try:
        user = await store.create_user("race@example.com")
        session = Session.new(user.id)
        await store.create_session(session)

        decode = store._session_from_json
        interleaved = []

        def decode_then_verify_elsewhere(raw):
            decoded = decode(raw)
            if not interleaved:
                interleaved.append(decoded.id)
                payload = json.loads(raw)
                payload["two_factor_verified"] = True
                writer.set(f"session:{decoded.id}", json.dumps(payload), keepttl=True)
            return decoded

        monkeypatch.setattr(store, "_session_from_json", decode_then_verify_elsewhere)
        later = session.last_activity + timedelta(minutes=5)
        touched = await store.touch_session(session.id, later, later + timedelta(days=30))

        assert interleaved == [session.id]
        assert touched.two_factor_verified is True
        stored = await store.get_session(session.id)
        assert stored.two_factor_verified is True
        assert stored.last_activity == later
    finally:
        writer.close()
        await store.close()


@requires_redis
async def test_update_of_a_revoked_session_is_not_resurrected():
    store = await _fresh_store()
    try:
        user = await store.create_user("gone@example.com")
        session = Session.new(user.id)
        await store.create_session(session)
        assert await store.revoke_session(session.id, user_id=user.id) is True

        now = utcnow()
        assert await store.touch_session(session.id, now, now + timedelta(days=1)) is None
        assert await store.mark_session_verified(session.id) is False
        assert await store.client.exists(f"session:{session.id}") == 0
    finally:
        await store.close()
