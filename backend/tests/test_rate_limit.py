from phoneauth.core.kv_store import MemoryKeyValueStore
from phoneauth.services.rate_limit import ip_rate_limiter, phone_rate_limiter


def test_phone_limiter_allows_three_then_blocks(kv_store: MemoryKeyValueStore, clock):
    limiter = phone_rate_limiter(kv_store)

    decisions = [limiter.check("+919876543210") for _ in range(3)]
    assert all(d.allowed for d in decisions)
    assert [d.current_count for d in decisions] == [1, 2, 3]

    clock.advance(seconds=100)
    blocked = limiter.check("+919876543210")
    assert blocked.allowed is False
    assert blocked.current_count == 4
    assert blocked.retry_after_seconds == 500


def test_window_is_fixed_from_first_hit(kv_store, clock):
    limiter = phone_rate_limiter(kv_store, limit=2, window_seconds=60)
    assert limiter.check("+15551234567").allowed
    clock.advance(seconds=50)
    assert limiter.check("+15551234567").allowed
    assert not limiter.check("+15551234567").allowed

    clock.advance(seconds=11)
    fresh = limiter.check("+15551234567")
    assert fresh.allowed is True
    assert fresh.current_count == 1


def test_phone_and_ip_counters_are_independent(kv_store):
    phone_limiter = phone_rate_limiter(kv_store, limit=1)
    ip_limiter = ip_rate_limiter(kv_store, limit=1)

    assert phone_limiter.check("10.0.0.1").allowed
    assert ip_limiter.check("10.0.0.1").allowed
    assert kv_store.get("otp:ratelimit:10.0.0.1") == "1"
    assert kv_store.get("otp:ratelimit:ip:10.0.0.1") == "1"


def test_different_phones_do_not_share_budget(kv_store):
    limiter = phone_rate_limiter(kv_store, limit=1)
    assert limiter.check("+15550000001").allowed
    assert not limiter.check("+15550000001").allowed
    assert limiter.check("+15550000002").allowed


def test_memory_store_ttl_and_expiry(kv_store, clock):
    assert kv_store.ttl("missing") == -2
    kv_store.set_with_expiry("k", "v", 10)
    assert kv_store.ttl("k") == 10
    clock.advance(seconds=4)
    assert kv_store.ttl("k") == 6
    assert kv_store.get("k") == "v"
    clock.advance(seconds=6)
    assert kv_store.get("k") is None
    assert kv_store.ttl("k") == -2
