from unittest.mock import MagicMock

import pytest
import redis

from src.adapters.cache.redis_cache import RedisCacheInvalidator
from src.domain.errors import CapacityError, TransientIOError


@pytest.fixture
def client():
    return MagicMock(spec=redis.Redis)


def test_evict_deletes_namespaced_key(client):
    client.delete.return_value = 1
    cache = RedisCacheInvalidator(client)

    assert cache.evict("subscription-by-msisdn", "46700000001") is True
    client.delete.assert_called_once_with("subscription-by-msisdn::46700000001")


def test_evict_missing_key_returns_false(client):
    client.delete.return_value = 0

    assert RedisCacheInvalidator(client).evict("users", "nobody") is False


def test_clear_scans_cache_prefix_in_chunks(client):
    keys = [f"subscription-stats::{i}".encode() for i in range(5)]
    client.scan_iter.return_value = iter(keys)
    client.delete.side_effect = lambda *batch: len(batch)
    cache = RedisCacheInvalidator(client, scan_count=2)

    assert cache.clear("subscription-stats") == 5
    client.scan_iter.assert_called_once_with(match="subscription-stats::*", count=2)
    assert [len(call.args) for call in client.delete.call_args_list] == [2, 2, 1]


def test_timeouts_are_transient(client):
    client.delete.side_effect = redis.exceptions.TimeoutError("slow")

    with pytest.raises(TransientIOError):
        RedisCacheInvalidator(client).evict("users", "alice")


def test_connection_errors_are_capacity_errors(client):
    client.scan_iter.side_effect = redis.exceptions.ConnectionError("refused")

    with pytest.raises(CapacityError):
        RedisCacheInvalidator(client).clear("users")


def test_ping_reports_failure_without_raising(client):
    client.ping.side_effect = redis.exceptions.ConnectionError("refused")

    assert RedisCacheInvalidator(client).ping() is False
