from datetime import timedelta

from riskgate.service.runtime import check_rate_limit
from riskgate.storage.models import utcnow
from riskgate.storage.redis_cache import rate_key


async def test_local_bucket_blocks_after_limit(runtime):
    assert runtime.cache is None
    for _ in range(3):
        allowed, _remaining, _reset = await check_rate_limit(runtime, "login:alice", 3, 60)
        assert allowed
    allowed, remaining, reset = await check_rate_limit(runtime, "login:alice", 3, 60)
    assert not allowed
    assert remaining == 0
    assert reset >= 1

    allowed, _remaining, _reset = await check_rate_limit(runtime, "login:bob", 3, 60)
    assert allowed


async def test_non_positive_limit_disables_check(runtime):
    for _ in range(5):
        allowed, _remaining, _reset = await check_rate_limit(runtime, "reset:ip", 0, 60)
        assert allowed


async def test_invalid_window_falls_back_to_a_minute(runtime):
    allowed, remaining, _reset = await check_rate_limit(runtime, "reset:ip", 2, 0)
    assert allowed
    assert remaining == 1


def test_rate_key_hides_identifier():
    key = rate_key("login:alice@example.com")
    assert key.startswith("riskgate:rate:")
    assert "alice" not in key
    assert key == rate_key("login:alice@example.com")


def test_window_verdict_reports_retry_after_from_expiry():
    from riskgate.storage.redis_cache import window_verdict

    assert window_verdict([2, 59000], 3) == (True, 1, 0)
    assert window_verdict([4, 1500], 3) == (False, 0, 2)
    assert window_verdict(["4", "10"], 3) == (False, 0, 1)


async def test_elapsed_windows_are_evicted(runtime):
    runtime._local_rate_limits["login:stale"] = (3, utcnow() - timedelta(minutes=2), 60)
    await check_rate_limit(runtime, "login:alice", 3, 60)

    assert "login:stale" not in runtime._local_rate_limits
    assert runtime._local_rate_limits["login:alice"][0] == 1
