"""Tests for the striped, TTL-bound session cache.

Concurrent logins for different identities write the cache at the same time,
so per-identity updates must be atomic and never lose a token.
"""

import threading
from typing import List

import pytest

from otpauth.storage.session_cache import SessionCache


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestSessionCacheBasics:
    def test_store_and_read_token(self):
        cache = SessionCache()

        cache.store("user@example.com", "abc123")

        assert cache.access_token("user@example.com") == "abc123"
        assert cache.auth_header("user@example.com") == "Bearer abc123"
        assert cache.is_valid("user@example.com") is True

    def test_values_are_trimmed(self):
        cache = SessionCache()

        cache.store("  9876543210 ", "  tok  ", " sess ")

        assert cache.access_token("9876543210") == "tok"
        assert cache.cookie("9876543210") == "sess"

    def test_padded_identity_reads_and_removes_same_entry(self):
        cache = SessionCache()
        cache.store(" user@example.com ", "abc", "sess")

        assert cache.auth_header(" user@example.com ") == "Bearer abc"
        assert cache.auth_header("user@example.com") == "Bearer abc"
        assert cache.cookie("\tuser@example.com") == "sess"
        assert cache.is_valid("user@example.com  ") is True
        assert cache.identities() == {"user@example.com"}

        assert cache.remove("  user@example.com") is True
        assert cache.is_valid("user@example.com") is False

    def test_blank_identity_reads_nothing(self):
        cache = SessionCache()

        assert cache.auth_header("  ") is None
        assert cache.remove("  ") is False

    def test_blank_identity_is_ignored(self):
        cache = SessionCache()

        cache.store("   ", "token")

        assert len(cache) == 0
        assert cache.identities() == set()

    def test_blank_token_keeps_existing_token(self):
        cache = SessionCache()
        cache.store("user@example.com", "first", "cookie-1")

        cache.store("user@example.com", "", "cookie-2")

        assert cache.access_token("user@example.com") == "first"
        assert cache.cookie("user@example.com") == "cookie-2"

    def test_unknown_identity_returns_none(self):
        cache = SessionCache()

        assert cache.auth_header("nobody@example.com") is None
        assert cache.cookie("nobody@example.com") is None
        assert cache.is_valid("nobody@example.com") is False

    def test_remove_and_clear(self):
        cache = SessionCache()
        cache.store("a@example.com", "t1")
        cache.store("b@example.com", "t2")

        assert cache.remove("a@example.com") is True
        assert cache.remove("a@example.com") is False
        assert cache.identities() == {"b@example.com"}
        assert cache.clear() == 1
        assert len(cache) == 0

    def test_invalid_stripe_count_rejected(self):
        with pytest.raises(ValueError):
            SessionCache(stripes=0)


class TestSessionExpiry:
    def test_token_within_ttl_is_returned(self):
        clock = FakeClock()
        cache = SessionCache(ttl_seconds=60, clock=clock)
        cache.store("user@example.com", "tok")

        clock.advance(60)

        assert cache.auth_header("user@example.com") == "Bearer tok"

    def test_expired_token_is_evicted_on_read(self):
        clock = FakeClock()
        cache = SessionCache(ttl_seconds=60, clock=clock)
        cache.store("user@example.com", "tok", "cookie")

        clock.advance(61)

        assert cache.auth_header("user@example.com") is None
        assert cache.cookie("user@example.com") is None
        assert "user@example.com" not in cache.identities()

    def test_new_token_resets_issue_time(self):
        clock = FakeClock()
        cache = SessionCache(ttl_seconds=60, clock=clock)
        cache.store("user@example.com", "old")
        clock.advance(50)
        cache.store("user@example.com", "new")
        clock.advance(50)

        assert cache.access_token("user@example.com") == "new"

    def test_cookie_only_update_keeps_issue_time(self):
        clock = FakeClock()
        cache = SessionCache(ttl_seconds=60, clock=clock)
        cache.store("user@example.com", "tok")
        clock.advance(50)
        cache.store("user@example.com", cookie="fresh-cookie")
        clock.advance(20)

        assert cache.access_token("user@example.com") is None

    def test_expired_cookie_does_not_carry_into_new_session(self):
        clock = FakeClock()
        cache = SessionCache(ttl_seconds=60, clock=clock)
        cache.store("user@example.com", "old", "old-cookie")
        clock.advance(61)

        cache.store("user@example.com", "new")

        assert cache.access_token("user@example.com") == "new"
        assert cache.cookie("user@example.com") is None


class TestSessionCacheThreadSafety:
    def test_concurrent_writes_for_distinct_identities(self):
        cache = SessionCache(stripes=4)
        errors: List[Exception] = []

        def worker(n: int):
            try:
                for i in range(50):
                    identity = f"user{n}-{i}@example.com"
                    cache.store(identity, f"token-{n}-{i}")
                    assert cache.access_token(identity) == f"token-{n}-{i}"
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(cache) == 500

    def test_concurrent_writes_same_identity_keep_consistent_entry(self):
        cache = SessionCache(stripes=1)
        errors: List[Exception] = []

        def writer(n: int):
            try:
                for i in range(100):
                    cache.store("shared@example.com", f"token-{n}-{i}", f"cookie-{n}-{i}")
            except Exception as exc:
                errors.append(exc)

        def reader():
            try:
                for _ in range(200):
                    token = cache.access_token("shared@example.com")
                    assert token is None or token.startswith("token-")
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(5)]
        threads += [threading.Thread(target=reader) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert cache.identities() == {"shared@example.com"}
