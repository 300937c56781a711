"""Tests for FeedState transitions and the backoff policy."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from feed_relay.core.state import BackoffPolicy, FeedState

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_initial_state_is_healthy():
    state = FeedState.initial()
    assert state.is_healthy
    assert state.etag is None
    assert state.last_status == 0
    assert state.backoff_until is None
    assert not state.is_in_backoff(NOW)


def test_success_stores_validators_and_clears_errors():
    failing = FeedState.initial().with_failed_fetch(500, now=NOW)
    state = failing.with_successful_fetch('"v1"', "Sun, 01 Mar 2026 10:00:00 GMT", 200, now=NOW)
    assert state.etag == '"v1"'
    assert state.last_modified == "Sun, 01 Mar 2026 10:00:00 GMT"
    assert state.last_status == 200
    assert state.error_count == 0
    assert state.backoff_until is None
    assert state.fetched_at == NOW
    # Transitions never mutate the source instance.
    assert failing.error_count == 1


def test_failure_increments_and_backs_off():
    state = FeedState.initial().with_failed_fetch(503, now=NOW)
    assert state.error_count == 1
    assert state.last_status == 503
    assert state.backoff_until == NOW + timedelta(seconds=60)
    assert state.is_in_backoff(NOW + timedelta(seconds=59))
    assert not state.is_in_backoff(NOW + timedelta(seconds=60))
    assert state.backoff_remaining(NOW + timedelta(seconds=15)) == 45


def test_backoff_grows_geometrically_until_ceiling():
    policy = BackoffPolicy(base_seconds=60, multiplier=2, max_seconds=3600)
    state = FeedState.initial()
    delays = []
    for _ in range(10):
        state = state.with_failed_fetch(500, policy=policy, now=NOW)
        delays.append((state.backoff_until - NOW).total_seconds())
    assert delays[:4] == [60, 120, 240, 480]
    for previous, current in zip(delays, delays[1:]):
        assert current >= previous
        if current < 3600:
            assert current == previous * 2
    assert max(delays) == 3600
    assert state.error_count == 10


def test_huge_error_count_stays_capped():
    policy = BackoffPolicy()
    assert policy.delay_for(0) == 0
    assert policy.delay_for(5000) == policy.max_seconds


def test_retry_after_only_extends_and_is_capped():
    state = FeedState.initial()
    longer = state.with_failed_fetch(429, backoff_seconds=600, now=NOW)
    assert longer.backoff_until == NOW + timedelta(seconds=600)

    shorter = state.with_failed_fetch(429, backoff_seconds=5, now=NOW)
    assert shorter.backoff_until == NOW + timedelta(seconds=60)

    capped = state.with_failed_fetch(503, backoff_seconds=86400, now=NOW)
    assert capped.backoff_until == NOW + timedelta(seconds=3600)


def test_dict_round_trip():
    state = FeedState.initial().with_successful_fetch('"abc"', None, 200, now=NOW)
    state = state.with_failed_fetch(502, now=NOW)
    restored = FeedState.from_dict(state.to_dict())
    assert restored == state


def test_from_dict_tolerates_missing_fields():
    state = FeedState.from_dict({})
    assert state == FeedState.initial()
