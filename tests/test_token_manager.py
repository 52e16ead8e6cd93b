import threading
import time

import pytest

from keyshop.g2a.auth import CachedToken, HashAuthenticator, TokenManager, parse_token_response
from keyshop.g2a.errors import G2AError, G2AErrorCode
from keyshop.services.cache_service import CacheUnavailableError, InMemoryCacheStore


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class BrokenCache(InMemoryCacheStore):
    def get(self, key):
        raise CacheUnavailableError("redis down")

    def set(self, key, value, ttl=None):
        raise CacheUnavailableError("redis down")


def test_token_is_cached_until_refresh_margin():
    clock = FakeClock()
    issued = []

    def fetch():
        issued.append(1)
        return f"tok-{len(issued)}", 3600

    manager = TokenManager(fetch, cache=InMemoryCacheStore(), clock=clock)
    assert manager.get_token() == "tok-1"
    clock.now += 3000
    assert manager.get_token() == "tok-1"
    # Inside the five-minute margin the token is refreshed
    clock.now += 400
    assert manager.get_token() == "tok-2"


def test_token_is_shared_through_the_cache_store():
    cache = InMemoryCacheStore()
    first = TokenManager(lambda: ("shared-token", 3600), cache=cache, env="live")
    assert first.get_token() == "shared-token"

    second = TokenManager(lambda: pytest.fail("should reuse the cached token"), cache=cache, env="live")
    assert second.get_token() == "shared-token"
    assert second.cache_key == "g2a:oauth2:token:live"


def test_cache_outage_falls_back_to_direct_fetch():
    manager = TokenManager(lambda: ("direct", 3600), cache=BrokenCache())
    assert manager.get_token() == "direct"
    # Served from the in-process copy afterwards
    assert manager.get_token() == "direct"


def test_fetch_failure_becomes_auth_failed():
    def fetch():
        raise G2AError(G2AErrorCode.NETWORK_ERROR, "Network error: refused")

    manager = TokenManager(fetch)
    with pytest.raises(G2AError) as excinfo:
        manager.get_token()
    assert excinfo.value.code == G2AErrorCode.AUTH_FAILED


def test_concurrent_callers_share_one_fetch():
    calls = []
    release = threading.Event()

    def slow_fetch():
        calls.append(1)
        release.wait(timeout=5)
        return "tok-concurrent", 3600

    manager = TokenManager(slow_fetch)
    results = []

    def worker():
        results.append(manager.get_token())

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    time.sleep(0.1)
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert len(calls) == 1
    assert results == ["tok-concurrent"] * 5


def test_concurrent_callers_share_the_failure():
    release = threading.Event()

    def failing_fetch():
        release.wait(timeout=5)
        raise G2AError(G2AErrorCode.AUTH_FAILED, "Authentication failed: bad secret")

    manager = TokenManager(failing_fetch)
    errors = []

    def worker():
        try:
            manager.get_token()
        except G2AError as exc:
            errors.append(exc.code)

    threads = [threading.Thread(target=worker) for _ in range(3)]
    for thread in threads:
        thread.start()
    time.sleep(0.1)
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert errors == [G2AErrorCode.AUTH_FAILED] * 3


def test_invalidate_forces_refetch():
    tokens = iter(["a", "b"])
    manager = TokenManager(lambda: (next(tokens), 3600), cache=InMemoryCacheStore())
    assert manager.get_token() == "a"
    manager.invalidate()
    assert manager.get_token() == "b"


def test_cached_token_round_trip_rejects_garbage():
    token = CachedToken(token="x", expires_at=10.0)
    assert CachedToken.from_json(token.to_json()) == token
    assert CachedToken.from_json("{not json") is None


def test_parse_token_response():
    assert parse_token_response({"access_token": "abc", "expires_in": 60}) == ("abc", 60)
    assert parse_token_response({"access_token": "abc"}) == ("abc", 3600)
    with pytest.raises(G2AError) as excinfo:
        parse_token_response({"token_type": "Bearer"})
    assert excinfo.value.code == G2AErrorCode.INVALID_RESPONSE


def test_live_token_headers_are_signed():
    auth = HashAuthenticator("id", "secret", "mail@example.com")
    headers = auth.token_headers("live", timestamp="1700000000")
    assert headers["X-API-KEY"] == "id"
    assert headers["X-G2A-Timestamp"] == "1700000000"
    assert len(headers["X-G2A-Hash"]) == 64
    assert auth.token_headers("sandbox") == {"Authorization": "secret, id"}
