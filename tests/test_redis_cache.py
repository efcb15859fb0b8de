import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from feblr_sso.service.errors import StorageUnavailable
from feblr_sso.storage.redis_cache import RedisCache, quota_key


class FakeRedis:
    """Minimal async Redis double with just the commands the cache issues."""

    def __init__(self, *, supports_getdel: bool = True, fail: bool = False):
        self.data = {}
        self.expiry = {}
        self.supports_getdel = supports_getdel
        self.fail = fail
        self.eval_calls = 0

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def getdel(self, key):
        self._check()
        if not self.supports_getdel:
            raise ResponseError("unknown command 'GETDEL'")
        return self.data.pop(key, None)

    async def eval(self, script, numkeys, key):
        self._check()
        self.eval_calls += 1
        return self.data.pop(key, None)


def _cache(client) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.client = client
    cache.redis_url = "redis://stub"
    cache.socket_timeout = 0.1
    return cache


async def test_put_ticket_is_set_if_absent_with_expiry():
    client = FakeRedis()
    cache = _cache(client)

    assert await cache.put_ticket("abc", {"account_id": "a1"}, 120) is True
    assert await cache.put_ticket("abc", {"account_id": "a2"}, 120) is False
    assert json.loads(client.data["ticket:abc"]) == {"account_id": "a1"}
    assert client.expiry["ticket:abc"] == 120


async def test_pop_ticket_returns_payload_once():
    cache = _cache(FakeRedis())
    await cache.put_ticket("abc", {"account_id": "a1"}, 120)

    assert await cache.pop_ticket("abc") == {"account_id": "a1"}
    assert await cache.pop_ticket("abc") is None


async def test_pop_ticket_falls_back_to_script_without_getdel():
    client = FakeRedis(supports_getdel=False)
    cache = _cache(client)
    await cache.put_ticket("abc", {"account_id": "a1"}, 120)

    assert await cache.pop_ticket("abc") == {"account_id": "a1"}
    assert client.eval_calls == 1


async def test_corrupt_ticket_payload_is_treated_as_missing():
    client = FakeRedis()
    client.data["ticket:abc"] = "{not json"
    cache = _cache(client)

    assert await cache.pop_ticket("abc") is None
    assert "ticket:abc" not in client.data


async def test_redis_errors_become_storage_unavailable():
    cache = _cache(FakeRedis(fail=True))
    with pytest.raises(StorageUnavailable):
        await cache.put_ticket("abc", {}, 120)
    with pytest.raises(StorageUnavailable):
        await cache.pop_ticket("abc")


async def test_incr_quota_runs_window_script():
    calls = []

    async def window_counter(keys, args):
        calls.append((keys, args))
        return [4, 37]

    cache = _cache(FakeRedis())
    cache._window_counter = window_counter

    assert await cache.incr_quota("anon:abc", "POST /v1/tickets", 1_699_999_980, 60) == (4, 37)
    assert calls == [([quota_key("anon:abc", "POST /v1/tickets", 1_699_999_980)], [60])]


async def test_incr_quota_failure_is_storage_unavailable():
    async def window_counter(keys, args):
        raise RedisConnectionError("timeout")

    cache = _cache(FakeRedis())
    cache._window_counter = window_counter
    with pytest.raises(StorageUnavailable):
        await cache.incr_quota("anon:abc", "POST /v1/tickets", 0, 60)


def test_quota_key_hashes_identity_and_route():
    key = quota_key("anon:abc", "POST /v1/tickets", 60)
    assert key.startswith("quota:")
    assert key.endswith(":60")
    assert "anon" not in key
    # Delimiters inside the subject cannot alias another counter
    assert quota_key("a|b", "c", 60) != quota_key("a", "b|c", 60)
    assert quota_key("a", "b", 60) != quota_key("a", "b", 120)
