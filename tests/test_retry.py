"""Tests for the exponential backoff policy."""

from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from outpost.core.retry import RetryPolicy


def test_reference_schedule():
    """First retry after 30s, then 60s, 120s, 240s."""
    policy = RetryPolicy()
    assert [policy.next_delay(n) for n in range(1, 5)] == [
        timedelta(seconds=30),
        timedelta(seconds=60),
        timedelta(seconds=120),
        timedelta(seconds=240),
    ]


@given(attempt=st.integers(min_value=1, max_value=25))
def test_delay_follows_formula(attempt: int):
    policy = RetryPolicy()
    assert policy.next_delay(attempt) == timedelta(seconds=30 * 2 ** (attempt - 1))


@given(
    base=st.floats(min_value=0.01, max_value=600, allow_nan=False),
    attempt=st.integers(min_value=1, max_value=20),
)
def test_delays_strictly_increase(base: float, attempt: int):
    policy = RetryPolicy(base_delay=base)
    assert policy.next_delay(attempt + 1) > policy.next_delay(attempt)


@pytest.mark.parametrize("attempt", [0, -1, -10])
def test_attempt_numbers_start_at_one(attempt: int):
    with pytest.raises(ValueError, match="attempt_number"):
        RetryPolicy().next_delay(attempt)


@given(attempt=st.integers(min_value=1, max_value=10), jitter=st.floats(min_value=0.01, max_value=1.0))
def test_jitter_stays_within_bounds(attempt: int, jitter: float):
    policy = RetryPolicy(jitter=jitter)
    base = 30 * 2 ** (attempt - 1)
    delay = policy.next_delay(attempt).total_seconds()
    assert base <= delay <= base * (1 + jitter) + 1e-6


def test_max_delay_caps_growth():
    policy = RetryPolicy(base_delay=30, max_delay=100)
    assert policy.next_delay(2) == timedelta(seconds=60)
    assert policy.next_delay(3) == timedelta(seconds=100)
    assert policy.next_delay(10) == timedelta(seconds=100)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"base_delay": 0},
        {"base_delay": -5},
        {"jitter": -0.1},
        {"jitter": 1.5},
        {"base_delay": 30, "max_delay": 10},
    ],
)
def test_invalid_policy_rejected(kwargs: dict):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
