from datetime import timedelta

import pytest

from authcore.service.sessions import SessionManager
from authcore.storage.models import User


@pytest.fixture
def user(store):
    return store.create_user(User(id="user-1", email="sessions@example.com", password_hash="x"))


@pytest.fixture
def manager(db, clock):
    return SessionManager(db, lifetime=timedelta(hours=1), clock=clock)


class TestSessionLifecycle:
    async def test_create_and_validate(self, manager, user, clock):
        session = await manager.create(user.id, "10.0.0.1", "Mozilla/5.0 Firefox")
        assert session.expires_at == clock() + timedelta(hours=1)
        assert session.token != session.refresh_token

        resolved = await manager.validate(session.id)
        assert resolved is not None
        assert resolved.id == user.id

    async def test_validate_touches_last_used(self, manager, store, user, clock):
        session = await manager.create(user.id)
        clock.advance(minutes=10)
        await manager.validate(session.id)
        assert store.sessions[session.id].last_used_at == clock()

    async def test_expired_session_is_not_touched(self, manager, store, user, clock):
        session = await manager.create(user.id)
        clock.advance(hours=1)
        assert await manager.validate(session.id) is None
        assert store.sessions[session.id].last_used_at == session.last_used_at

    async def test_unknown_and_empty_ids(self, manager, user):
        assert await manager.validate("missing") is None
        assert await manager.validate("") is None

    async def test_session_of_deleted_user_is_invalid(self, manager, store, user):
        session = await manager.create(user.id)
        store.users.pop(user.id)
        assert await manager.validate(session.id) is None

    async def test_revoke(self, manager, user):
        session = await manager.create(user.id)
        assert await manager.revoke(session.id) is True
        assert await manager.revoke(session.id) is False
        assert await manager.validate(session.id) is None

    async def test_revoke_all_keeps_exception(self, manager, user):
        keep = await manager.create(user.id)
        await manager.create(user.id)
        await manager.create(user.id)
        assert await manager.revoke_all(user.id, except_session_id=keep.id) == 2
        assert await manager.validate(keep.id) is not None
        assert await manager.revoke_all(user.id) == 1

    async def test_cleanup_expired(self, manager, user, clock):
        await manager.create(user.id)
        clock.advance(minutes=30)
        fresh = await manager.create(user.id)
        clock.advance(minutes=31)
        assert await manager.cleanup_expired() == 1
        assert await manager.get_live(fresh.id) is not None

    def test_lifetime_must_be_positive(self, db):
        with pytest.raises(ValueError):
            SessionManager(db, lifetime=timedelta(0))


class TestSessionListing:
    async def test_marks_current_and_hides_expired(self, manager, user, clock):
        old = await manager.create(user.id, "10.0.0.1")
        clock.advance(minutes=45)
        first = await manager.create(user.id, "10.0.0.2")
        second = await manager.create(user.id, "10.0.0.3")
        clock.advance(minutes=20)

        listed = await manager.list_for_user(user.id, current_session_id=second.id)
        ids = {info.id for info in listed}
        assert old.id not in ids
        assert ids == {first.id, second.id}
        assert [info.id for info in listed if info.is_current] == [second.id]

    async def test_login_history_newest_first(self, manager, user, clock):
        created = []
        for _ in range(4):
            created.append(await manager.create(user.id))
            clock.advance(minutes=1)
        history = await manager.login_history(user.id, limit=3)
        assert [h.id for h in history] == [s.id for s in reversed(created)][:3]
        assert not any(h.is_current for h in history)

    async def test_recent_window(self, manager, user, clock):
        await manager.create(user.id)
        clock.advance(hours=2)
        latest = await manager.create(user.id)
        recent = await manager.recent(user.id, timedelta(hours=1))
        assert [s.id for s in recent] == [latest.id]
