"""Storage trouble must surface as TransientError, never as a failed check."""

import time

import pytest

from authcore.service.errors import InvalidCredentials, TransientError
from authcore.service.persistence import StoreGateway
from authcore.service.runtime import Runtime
from authcore.storage.errors import StoreUnavailable
from authcore.storage.memory import MemoryStore


class SlowStore(MemoryStore):
    def get_user(self, user_id):
        time.sleep(0.3)
        return super().get_user(user_id)


class UnreachableStore(MemoryStore):
    def get_user_by_email(self, email):
        raise StoreUnavailable("database unavailable")


class TestStoreGateway:
    async def test_passes_results_through(self, db, store):
        await db.call("upsert_role", store.get_role("viewer"))
        assert (await db.call("get_role", "viewer")).name == "viewer"

    async def test_slow_call_times_out(self):
        gateway = StoreGateway(SlowStore(), timeout=0.05)
        with pytest.raises(TransientError) as excinfo:
            await gateway.call("get_user", "u1")
        assert excinfo.value.status_code == 503

    async def test_unavailable_store_is_transient(self):
        gateway = StoreGateway(UnreachableStore(), timeout=1.0)
        with pytest.raises(TransientError):
            await gateway.call("get_user_by_email", "a@example.com")

    async def test_other_errors_propagate(self, db):
        with pytest.raises(AttributeError):
            await db.call("no_such_operation")


async def test_login_against_unreachable_store_is_not_a_credential_failure(settings, clock):
    rt = Runtime(settings, clock=clock, store=UnreachableStore())
    with pytest.raises(TransientError) as excinfo:
        await rt.auth.login("someone@example.com", "Tr0ub4dor&3x-Horse")
    assert not isinstance(excinfo.value, InvalidCredentials)
    assert rt.store.security_events == []
