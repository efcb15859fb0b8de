import math

import pytest

from feblr_sso.service.errors import QuotaExceeded, StorageUnavailable
from feblr_sso.service.quota import QuotaGuard
from feblr_sso.storage.local_cache import LocalCache

ROUTE = "POST /v1/tickets"


@pytest.fixture
def guard(clock):
    return QuotaGuard(
        LocalCache(clock=clock),
        window_seconds=60,
        default_limit=100,
        route_limits={ROUTE: 3, "/v1/tokens": 5},
        clock=clock,
    )


class _BrokenCounter:
    async def incr_quota(self, identity, route, window_start, window_seconds):
        raise StorageUnavailable("redis down")


async def test_requests_within_limit_are_admitted(guard):
    remaining = []
    for _ in range(3):
        decision = await guard.enforce("anon:abc", ROUTE)
        remaining.append(decision.remaining)
    assert remaining == [2, 1, 0]


async def test_request_over_limit_is_rejected_with_retry_after(guard, clock):
    for _ in range(3):
        await guard.enforce("anon:abc", ROUTE)
    with pytest.raises(QuotaExceeded) as excinfo:
        await guard.enforce("anon:abc", ROUTE)

    window_end = guard.window_start(clock.now) + 60
    assert excinfo.value.limit == 3
    assert excinfo.value.retry_after == math.ceil(window_end - clock.now)
    assert 1 <= excinfo.value.retry_after <= 60


async def test_next_window_starts_fresh(guard, clock):
    for _ in range(3):
        await guard.enforce("anon:abc", ROUTE)
    with pytest.raises(QuotaExceeded):
        await guard.enforce("anon:abc", ROUTE)

    clock.advance(60)
    decision = await guard.enforce("anon:abc", ROUTE)
    assert decision.remaining == 2


async def test_identities_and_routes_are_counted_separately(guard):
    for _ in range(3):
        await guard.enforce("anon:abc", ROUTE)
    assert (await guard.enforce("anon:def", ROUTE)).remaining == 2
    assert (await guard.enforce("anon:abc", "POST /v1/tokens")).limit == 5


def test_limit_lookup_prefers_method_then_template_then_default(guard):
    assert guard.limit_for(ROUTE) == 3
    assert guard.limit_for("POST /v1/tokens") == 5
    assert guard.limit_for("GET /v1/authorizations") == 100


async def test_non_positive_limit_disables_enforcement(clock):
    guard = QuotaGuard(LocalCache(clock=clock), route_limits={ROUTE: 0}, clock=clock)
    for _ in range(10):
        decision = await guard.enforce("anon:abc", ROUTE)
        assert decision.enforced is False


async def test_counter_failure_fails_closed_by_default(clock):
    guard = QuotaGuard(_BrokenCounter(), clock=clock)
    with pytest.raises(StorageUnavailable):
        await guard.enforce("anon:abc", ROUTE)


async def test_counter_failure_can_fail_open(clock):
    guard = QuotaGuard(_BrokenCounter(), fail_open=True, clock=clock)
    decision = await guard.enforce("anon:abc", ROUTE)
    assert decision.enforced is False


def test_decision_headers():
    from feblr_sso.service.quota import QuotaDecision

    headers = {}
    QuotaDecision(route=ROUTE, limit=3, remaining=1, reset_after=17).apply_headers(headers)
    assert headers == {
        "X-RateLimit-Limit": "3",
        "X-RateLimit-Remaining": "1",
        "X-RateLimit-Reset": "17",
    }

    untouched = {}
    QuotaDecision(route=ROUTE, limit=0, remaining=0, reset_after=0, enforced=False).apply_headers(
        untouched
    )
    assert untouched == {}


def test_window_must_be_positive(clock):
    with pytest.raises(ValueError):
        QuotaGuard(LocalCache(clock=clock), window_seconds=0)
