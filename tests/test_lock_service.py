"""
Tests for the Redis lock used to serialize scheduler passes.
"""

from unittest.mock import AsyncMock

import pytest

from rfp_intake.core.shared.lock_service import LockService


class FakeLockRedis:
    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        return True

    async def eval(self, script, numkeys, key, token):
        if self.values.get(key) == token:
            del self.values[key]
            return 1
        return 0


@pytest.fixture
def lock_service():
    service = LockService(redis_url="redis://localhost:6379/15")
    fake = FakeLockRedis()
    service._get_redis = AsyncMock(return_value=fake)
    return service, fake


class TestLockService:

    @pytest.mark.asyncio
    async def test_second_holder_is_refused(self, lock_service):
        service, fake = lock_service

        async with service.lock("saved_search_scheduler", timeout=60) as first:
            async with service.lock("saved_search_scheduler", timeout=60) as second:
                assert first is True
                assert second is False
            assert fake.ttls["rfp_intake:lock:saved_search_scheduler"] == 60

        assert fake.values == {}

    @pytest.mark.asyncio
    async def test_release_ignores_foreign_token(self, lock_service):
        """Test that a holder whose key expired cannot delete the new holder's lock."""
        service, fake = lock_service
        token = await service.try_acquire("saved_search_scheduler", 60)
        fake.values["rfp_intake:lock:saved_search_scheduler"] = "someone-else"

        assert await service.release("saved_search_scheduler", token) is False
        assert fake.values["rfp_intake:lock:saved_search_scheduler"] == "someone-else"
