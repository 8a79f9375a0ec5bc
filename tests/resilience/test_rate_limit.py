"""Fixed-window limiter: counting, the per-IP window and fail-open on Redis errors."""
from unittest.mock import MagicMock

import redis

from dreamlens.services.rate_limit import RateLimiter


def _client(counts, ttl=42):
    client = MagicMock()
    client.incr.side_effect = list(counts)
    client.ttl.return_value = ttl
    return client


def test_first_hit_sets_expiry():
    client = _client([1])
    result = RateLimiter(client).check("generation", "u1", limit=10, window_seconds=60)
    assert result.allowed
    client.expire.assert_called_once_with("rl:generation:user:u1", 60)


def test_over_limit_reports_reset():
    client = _client([11])
    result = RateLimiter(client).check("generation", "u1", limit=10, window_seconds=60)
    assert not result.allowed
    assert result.reset_in == 42
    client.expire.assert_not_called()


def test_ip_window_can_block_alone():
    client = _client([2, 11])
    result = RateLimiter(client).check("generation", "u1", limit=10, window_seconds=60, ip_address="1.2.3.4")
    assert not result.allowed
    assert result.count == 11
    keys = [c.args[0] for c in client.incr.call_args_list]
    assert keys == ["rl:generation:user:u1", "rl:generation:ip:1.2.3.4"]


def test_redis_down_allows():
    client = MagicMock()
    client.incr.side_effect = redis.ConnectionError("down")
    result = RateLimiter(client).check("generation", "u1", limit=10, window_seconds=60)
    assert result.allowed
    assert result.count == 0
