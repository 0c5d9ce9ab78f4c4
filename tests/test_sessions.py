"""Tests for the per-device session registry."""

import pytest

from campusauth.service.sessions import SessionRegistry
from campusauth.storage.errors import StorageUnavailable
from campusauth.storage.models import DeviceInfo

from conftest import FailingCache, make_settings


@pytest.fixture
def sessions(cache, settings, clock):
    return SessionRegistry(cache, settings, clock=clock)


class TestCreate:
    async def test_create_returns_hex_id_and_stores_device(self, sessions):
        device = DeviceInfo(device_type="mobile", device_label="Pixel 8", user_agent="app/2.1")
        session_id = await sessions.create("user-1", device, "10.0.0.5")

        assert len(session_id) == 64
        int(session_id, 16)
        record = await sessions.get("user-1", session_id)
        assert record.device_type == "mobile"
        assert record.device_label == "Pixel 8"
        assert record.origin_address == "10.0.0.5"
        assert record.user_agent == "app/2.1"
        assert record.expires_in == 7 * 24 * 3600

    async def test_defaults_when_device_missing(self, sessions):
        session_id = await sessions.create("user-1")
        record = await sessions.get("user-1", session_id)
        assert record.device_type == "web"
        assert record.device_label == "Unknown Device"

    async def test_sessions_expire_after_ttl(self, cache, clock):
        sessions = SessionRegistry(cache, make_settings(session_ttl_seconds=120), clock=clock)
        session_id = await sessions.create("user-1")
        clock.advance(seconds=121)
        assert await sessions.get("user-1", session_id) is None


class TestListAndTouch:
    async def test_list_is_most_recent_first(self, sessions, clock):
        first = await sessions.create("user-1")
        clock.advance(minutes=1)
        second = await sessions.create("user-1")
        await sessions.create("user-2")
        clock.advance(minutes=1)
        await sessions.touch("user-1", first)

        listed = await sessions.list("user-1")
        assert [r.session_id for r in listed] == [first, second]
        assert await sessions.count("user-1") == 2

    async def test_touch_extends_ttl(self, sessions, clock):
        session_id = await sessions.create("user-1")
        clock.advance(days=6)
        assert await sessions.touch("user-1", session_id) is True
        clock.advance(days=6)
        assert await sessions.get("user-1", session_id) is not None

    async def test_touch_does_not_resurrect_revoked_session(self, sessions):
        session_id = await sessions.create("user-1")
        await sessions.revoke(session_id, "user-1")
        assert await sessions.touch("user-1", session_id) is False
        assert await sessions.get("user-1", session_id) is None


class TestRevoke:
    async def test_scoped_revoke(self, sessions):
        session_id = await sessions.create("user-1")
        assert await sessions.revoke(session_id, "user-2") is False
        assert await sessions.revoke(session_id, "user-1") is True
        assert await sessions.revoke(session_id, "user-1") is False

    async def test_unscoped_revoke_finds_owner(self, sessions):
        session_id = await sessions.create("user-1")
        assert await sessions.revoke(session_id) is True
        assert await sessions.count("user-1") == 0

    @pytest.mark.parametrize("bad_id", ["*", "", "abc", "G" * 64])
    async def test_malformed_ids_never_match(self, sessions, bad_id):
        await sessions.create("user-1")
        assert await sessions.revoke(bad_id) is False
        assert await sessions.count("user-1") == 1

    async def test_revoke_all_keeps_exception(self, sessions):
        keep = await sessions.create("user-1")
        await sessions.create("user-1")
        await sessions.create("user-1")
        other = await sessions.create("user-2")

        assert await sessions.revoke_all("user-1", except_session_id=keep) == 2
        assert [r.session_id for r in await sessions.list("user-1")] == [keep]
        assert await sessions.get("user-2", other) is not None

    async def test_revoke_all_with_nothing_to_do(self, sessions):
        assert await sessions.revoke_all("nobody") == 0

    async def test_cache_failure_propagates(self, settings, clock):
        sessions = SessionRegistry(
            FailingCache(clock, failing={"keys_matching"}), settings, clock=clock
        )
        with pytest.raises(StorageUnavailable):
            await sessions.revoke_all("user-1")
