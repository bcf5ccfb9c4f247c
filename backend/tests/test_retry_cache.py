"""
リトライ（指数バックオフ）とTTLキャッシュのテスト
"""
import pytest

from textbook_qa.core.cache import TTLCache
from textbook_qa.core.retry import batched, with_retry


class _Flaky:
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"failure {self.calls}")
        return "ok"


async def test_with_retry_backs_off_then_succeeds():
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    flaky = _Flaky(failures=2)
    result = await with_retry(flaky, attempts=3, base_delay=1.0, sleep=fake_sleep)

    assert result == "ok"
    assert flaky.calls == 3
    assert len(waits) == 2
    # 1回目は 1秒 + ジッター(<=0.25)、2回目は 2秒 + ジッター
    assert 1.0 <= waits[0] <= 1.25
    assert 2.0 <= waits[1] <= 2.25


async def test_with_retry_raises_last_error():
    async def fake_sleep(seconds):
        return None

    flaky = _Flaky(failures=5)
    with pytest.raises(ConnectionError, match="failure 3"):
        await with_retry(flaky, attempts=3, base_delay=0.0, sleep=fake_sleep)
    assert flaky.calls == 3


async def test_with_retry_does_not_retry_other_errors():
    calls = []

    async def boom():
        calls.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await with_retry(boom, attempts=3, base_delay=0.0, retry_on=(ConnectionError,))
    assert len(calls) == 1


def test_batched():
    assert batched([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert batched([], 50) == []


def test_ttl_cache_expires(clock):
    cache = TTLCache(ttl_sec=60, clock=clock)
    cache.set("doc", "text")

    assert cache.get("doc") == "text"
    clock.advance(59)
    assert cache.get("doc") == "text"
    clock.advance(1)
    assert cache.get("doc") is None
    assert len(cache) == 0


def test_ttl_cache_margin_treats_near_expiry_as_miss(clock):
    cache = TTLCache(ttl_sec=3600, clock=clock)
    cache.set("handle", "cachedContents/1")

    clock.advance(3600 - 301)
    assert cache.get("handle", margin=300) == "cachedContents/1"
    clock.advance(2)
    assert cache.get("handle", margin=300) is None


def test_ttl_cache_purge(clock):
    cache = TTLCache(ttl_sec=10, clock=clock)
    cache.set("short", 1)
    cache.set("long", 2, ttl_sec=100)

    clock.advance(20)
    assert cache.purge() == 1
    assert len(cache) == 1
    assert cache.get("long") == 2
