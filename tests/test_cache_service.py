import pytest
import redis

from keyshop.errors import SyncInProgressError
from keyshop.observability.metrics import get_counter_value
from keyshop.services.cache_service import (
    CacheLock,
    CacheUnavailableError,
    InMemoryCacheStore,
    RedisCacheStore,
    invalidate_prefixes,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FakeRedis:
    """The subset of ``redis.Redis`` the store uses."""

    def __init__(self, down=False):
        self.data = {}
        self.down = down
        self.calls = []

    def _check(self):
        if self.down:
            raise redis.ConnectionError("Connection refused")

    def get(self, key):
        self._check()
        self.calls.append(("get", key))
        return self.data.get(key)

    def set(self, key, value, nx=False, ex=None):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    def delete(self, *keys):
        self._check()
        self.calls.append(("delete",) + keys)
        for key in keys:
            self.data.pop(key, None)

    def eval(self, script, numkeys, *args):
        # Only the compare-and-delete script is ever sent
        self._check()
        key, value = args[:numkeys][0], args[numkeys]
        self.calls.append(("eval", key, value))
        if self.data.get(key) == value:
            del self.data[key]
            return 1
        return 0

    def scan_iter(self, match=None, count=None):
        self._check()
        prefix = match.rstrip("*")
        return [key for key in list(self.data) if key.startswith(prefix)]

    def ping(self):
        self._check()
        return True


def test_in_memory_entries_expire():
    clock = FakeClock()
    cache = InMemoryCacheStore(clock=clock)
    cache.set("home:featured", "[]", ttl=10)
    assert cache.get("home:featured") == "[]"
    clock.now = 11
    assert cache.get("home:featured") is None


def test_in_memory_add_is_set_if_absent():
    cache = InMemoryCacheStore()
    assert cache.add("lock", "a", ttl=60) is True
    assert cache.add("lock", "b", ttl=60) is False
    assert cache.get("lock") == "a"


def test_invalidate_prefixes_counts_removed_keys():
    cache = InMemoryCacheStore()
    for key in ("home:1", "game:2", "catalog:3", "user:4:orders"):
        cache.set(key, "x")
    assert invalidate_prefixes(cache, ("home:", "game:", "catalog:")) == 3
    assert cache.get("user:4:orders") == "x"


def test_redis_store_maps_errors():
    store = RedisCacheStore("redis://localhost:6379/0", client=FakeRedis(down=True))
    with pytest.raises(CacheUnavailableError):
        store.get("anything")
    assert store.ping() is False
    assert invalidate_prefixes(store, ("home:",)) == 0
    assert get_counter_value("cache_errors_total") == 1


def test_redis_store_add_and_prefix_delete():
    store = RedisCacheStore("redis://localhost:6379/0", client=FakeRedis())
    assert store.add("g2a:sync:lock", "t1", ttl=60) is True
    assert store.add("g2a:sync:lock", "t2", ttl=60) is False
    store.set("catalog:page:1", "x")
    store.set("catalog:page:2", "y")
    assert store.delete_prefix("catalog:") == 2


def test_lock_excludes_second_holder():
    cache = InMemoryCacheStore()
    first = CacheLock(cache, "g2a:sync:lock", ttl=60)
    with first.hold():
        assert first.is_held()
        with pytest.raises(SyncInProgressError):
            with CacheLock(cache, "g2a:sync:lock", ttl=60).hold():
                pass
    assert not first.is_held()


def test_lock_release_leaves_foreign_token_alone():
    cache = InMemoryCacheStore()
    lock = CacheLock(cache, "g2a:sync:lock", ttl=60)
    assert lock.acquire()
    # Expired and re-acquired by someone else
    cache.set("g2a:sync:lock", "someone-else")
    lock.release()
    assert cache.get("g2a:sync:lock") == "someone-else"


def test_in_memory_delete_if_equals_checks_value_and_expiry():
    clock = FakeClock()
    cache = InMemoryCacheStore(clock=clock)
    cache.set("g2a:sync:lock", "mine", ttl=10)
    assert cache.delete_if_equals("g2a:sync:lock", "theirs") is False
    assert cache.get("g2a:sync:lock") == "mine"
    assert cache.delete_if_equals("g2a:sync:lock", "mine") is True
    assert cache.get("g2a:sync:lock") is None

    cache.set("g2a:sync:lock", "mine", ttl=10)
    clock.now = 11
    assert cache.delete_if_equals("g2a:sync:lock", "mine") is False


def test_redis_lock_release_is_a_single_compare_and_delete():
    fake = FakeRedis()
    store = RedisCacheStore("redis://localhost:6379/0", client=fake)
    lock = CacheLock(store, "g2a:sync:lock", ttl=60)
    assert lock.acquire()
    fake.calls.clear()

    lock.release()

    assert fake.calls == [("eval", "g2a:sync:lock", lock.token)]
    assert "g2a:sync:lock" not in fake.data


def test_redis_lock_release_keeps_a_lock_taken_over_by_another_holder():
    fake = FakeRedis()
    store = RedisCacheStore("redis://localhost:6379/0", client=fake)
    lock = CacheLock(store, "g2a:sync:lock", ttl=60)
    assert lock.acquire()
    fake.data["g2a:sync:lock"] = "someone-else"

    lock.release()

    assert fake.data["g2a:sync:lock"] == "someone-else"
    assert not any(call[0] == "delete" for call in fake.calls)


def test_lock_release_failure_is_counted():
    fake = FakeRedis()
    lock = CacheLock(RedisCacheStore("redis://localhost:6379/0", client=fake), "g2a:sync:lock", ttl=60)
    assert lock.acquire()
    fake.down = True
    lock.release()
    assert get_counter_value("cache_errors_total", {"operation": "lock_release"}) == 1


def test_lock_proceeds_when_store_is_down():
    store = RedisCacheStore("redis://localhost:6379/0", client=FakeRedis(down=True))
    with CacheLock(store, "g2a:sync:lock", ttl=60).hold() as lock:
        assert lock.acquired
