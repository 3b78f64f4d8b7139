from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import redis

import contractnest_edge.core.response_cache as response_cache
from contractnest_edge.core.errors import StoreUnavailable
from contractnest_edge.core.response_cache import (
    RedisResponseCache,
    SQLiteResponseCache,
    read_through,
)


def _cache(tmp_path: Path) -> SQLiteResponseCache:
    return SQLiteResponseCache(db_path=tmp_path / "cache.sqlite3")


def test_get_missing_key_returns_none(tmp_path: Path) -> None:
    assert _cache(tmp_path).get("nope") is None


def test_put_then_get_within_ttl(tmp_path: Path) -> None:
    cache = _cache(tmp_path)
    cache.put("tenant1:list-contracts:all", {"items": [1, 2]}, ttl_seconds=30)

    assert cache.get("tenant1:list-contracts:all") == {"items": [1, 2]}

    cache.put("tenant1:list-contracts:all", {"items": []}, ttl_seconds=30)
    assert cache.get("tenant1:list-contracts:all") == {"items": []}


def test_entry_never_served_after_expiry(tmp_path: Path, monkeypatch) -> None:
    cache = _cache(tmp_path)
    cache.put("k", {"v": 1}, ttl_seconds=10)

    future = datetime.now(timezone.utc) + timedelta(seconds=11)
    monkeypatch.setattr(response_cache, "_utc_now", lambda: future)

    assert cache.get("k") is None
    assert cache.get_entry("k") is None


def test_read_through_computes_once(tmp_path: Path) -> None:
    cache = _cache(tmp_path)
    calls = []

    def compute():
        calls.append(1)
        return {"items": ["a"]}

    v1, hit1 = read_through(cache, "k", 30, compute)
    v2, hit2 = read_through(cache, "k", 30, compute)

    assert v1 == v2 == {"items": ["a"]}
    assert (hit1, hit2) == (False, True)
    assert len(calls) == 1


def test_sqlite_cache_unreachable(tmp_path: Path) -> None:
    cache = _cache(tmp_path)
    cache.db_path = tmp_path

    with pytest.raises(StoreUnavailable):
        cache.get("k")


def test_redis_cache_uses_prefixed_keys_and_ttl() -> None:
    client = MagicMock()
    client.get.return_value = '{"items": [1]}'

    with patch.object(redis.Redis, "from_url", return_value=client) as from_url:
        cache = RedisResponseCache(redis_url="redis://cache:6379/1")
        cache.put("tenant1:k", {"items": [1]}, ttl_seconds=15)
        assert cache.get("tenant1:k") == {"items": [1]}

    from_url.assert_called_once_with("redis://cache:6379/1", decode_responses=True)
    client.set.assert_called_once_with("edge:cache:tenant1:k", '{"items": [1]}', ex=15)
    client.get.assert_called_once_with("edge:cache:tenant1:k")


def test_redis_cache_miss_and_errors() -> None:
    client = MagicMock()
    client.get.return_value = None

    with patch.object(redis.Redis, "from_url", return_value=client):
        cache = RedisResponseCache(redis_url="redis://cache:6379/1")
        assert cache.get("k") is None

        client.get.side_effect = redis.ConnectionError("down")
        with pytest.raises(StoreUnavailable):
            cache.get("k")

        client.set.side_effect = redis.TimeoutError("slow")
        with pytest.raises(StoreUnavailable):
            cache.put("k", {}, ttl_seconds=0)

        cache.close()
    client.close.assert_called_once()


def test_add_if_absent_only_first_writer_wins(tmp_path: Path) -> None:
    cache = _cache(tmp_path)

    assert cache.add_if_absent("sig:abc", {"n": 1}, ttl_seconds=30) is True
    assert cache.add_if_absent("sig:abc", {"n": 2}, ttl_seconds=30) is False
    assert cache.get("sig:abc") == {"n": 1}


def test_add_if_absent_replaces_expired_entry(tmp_path: Path, monkeypatch) -> None:
    cache = _cache(tmp_path)
    cache.put("sig:abc", {"n": 1}, ttl_seconds=10)

    future = datetime.now(timezone.utc) + timedelta(seconds=11)
    monkeypatch.setattr(response_cache, "_utc_now", lambda: future)

    assert cache.add_if_absent("sig:abc", {"n": 2}, ttl_seconds=10) is True
    assert cache.get("sig:abc") == {"n": 2}


def test_redis_add_if_absent_uses_set_nx() -> None:
    client = MagicMock()
    client.set.side_effect = [True, None]

    with patch.object(redis.Redis, "from_url", return_value=client):
        cache = RedisResponseCache(redis_url="redis://cache:6379/1")
        assert cache.add_if_absent("sig:abc", {"n": 1}, ttl_seconds=300) is True
        assert cache.add_if_absent("sig:abc", {"n": 1}, ttl_seconds=300) is False

    client.set.assert_called_with("edge:cache:sig:abc", '{"n": 1}', nx=True, ex=300)
