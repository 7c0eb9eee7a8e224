"""Unit tests for the in-memory sliding-window store."""

from unittest.mock import Mock

import pytest

from admission.adapters.rate_limit.in_memory import InMemorySlidingWindowStore


def _store(start_ms: int = 0, **kwargs) -> tuple[InMemorySlidingWindowStore, Mock]:
    clock = Mock(return_value=start_ms)
    return InMemorySlidingWindowStore(clock=clock, **kwargs), clock


def test_allows_up_to_max_in_same_window() -> None:
    store, _ = _store()

    assert store.check("k", 60_000, 3).admitted is True
    assert store.check("k", 60_000, 3).admitted is True
    result = store.check("k", 60_000, 3)
    assert result.admitted is True
    assert result.remaining == 0


def test_rejects_when_over_max() -> None:
    store, _ = _store()

    assert store.check("k", 60_000, 2).admitted is True
    assert store.check("k", 60_000, 2).admitted is True

    rejected = store.check("k", 60_000, 2)
    assert rejected.admitted is False
    assert rejected.remaining == 0
    assert rejected.limit == 2
    assert rejected.retry_after_seconds >= 1


def test_window_slides_instead_of_resetting() -> None:
    store, clock = _store()

    for t in (0, 100, 200):
        clock.return_value = t
        assert store.check("k", 1000, 3).admitted is True

    clock.return_value = 999
    assert store.check("k", 1000, 3).admitted is False

    clock.return_value = 1001
    assert store.check("k", 1000, 3).admitted is True


def test_rejected_checks_are_not_recorded() -> None:
    store, clock = _store()

    assert store.check("k", 1000, 1).admitted is True
    clock.return_value = 500
    assert store.check("k", 1000, 1).admitted is False
    assert store.window_length("k") == 1

    # Only the admitted event at t=0 counts, so room returns at t=1000
    clock.return_value = 1000
    assert store.check("k", 1000, 1).admitted is True


def test_remaining_is_non_increasing_within_window() -> None:
    store, clock = _store()

    remaining = []
    for t in range(0, 5000, 1000):
        clock.return_value = t
        remaining.append(store.check("k", 60_000, 5).remaining)

    assert remaining == [4, 3, 2, 1, 0]
    assert all(0 <= r <= 5 for r in remaining)


def test_reset_at_tracks_oldest_retained_event() -> None:
    store, clock = _store(start_ms=1_000)

    first = store.check("k", 10_000, 3)
    assert first.reset_at == 11_000

    clock.return_value = 4_000
    second = store.check("k", 10_000, 3)
    assert second.reset_at == 11_000

    clock.return_value = 12_000
    third = store.check("k", 10_000, 3)
    assert third.reset_at == 14_000


def test_retry_after_points_at_reset_time() -> None:
    store, clock = _store(start_ms=1_000)

    store.check("k", 10_000, 2)
    clock.return_value = 2_000
    store.check("k", 10_000, 2)

    clock.return_value = 3_500
    rejected = store.check("k", 10_000, 2)
    assert rejected.admitted is False
    assert rejected.reset_at == 11_000
    assert rejected.retry_after_seconds == 8
    assert 3_500 + rejected.retry_after_seconds * 1000 >= rejected.reset_at

    clock.return_value = rejected.reset_at
    assert store.check("k", 10_000, 2).admitted is True


def test_retry_after_is_at_least_one_second() -> None:
    store, clock = _store()

    store.check("k", 1000, 1)
    clock.return_value = 999
    rejected = store.check("k", 1000, 1)

    assert rejected.admitted is False
    assert rejected.retry_after_seconds == 1


def test_admitted_verdict_has_no_retry_after() -> None:
    store, _ = _store()

    assert store.check("k", 1000, 1).retry_after_seconds == 0


def test_isolated_by_key() -> None:
    store, _ = _store()

    assert store.check("k1", 60_000, 1).admitted is True
    assert store.check("k1", 60_000, 1).admitted is False

    other = store.check("k2", 60_000, 1)
    assert other.admitted is True
    assert other.remaining == 0


def test_partition_is_created_lazily() -> None:
    store, _ = _store()

    assert store.partition_count == 0
    assert store.window_length("k") == 0

    store.check("k", 1000, 1)
    assert store.partition_count == 1
    assert store.window_length("k") == 1


def test_timestamp_count_never_exceeds_cap() -> None:
    store, clock = _store(max_entries_per_key=5)

    admitted = 0
    for t in range(50):
        clock.return_value = t
        admitted += store.check("k", 60_000, 5).admitted
        assert store.window_length("k") <= 5

    assert admitted == 5
    assert store.window_length("k") == 5


def test_max_above_cap_is_rejected() -> None:
    store, _ = _store(max_entries_per_key=3)

    with pytest.raises(ValueError, match="max_entries_per_key"):
        store.check("k", 60_000, 5)

    assert store.partition_count == 0


def test_max_equal_to_cap_is_enforced() -> None:
    store, _ = _store(max_entries_per_key=3)

    results = [store.check("k", 60_000, 3) for _ in range(50)]

    assert sum(r.admitted for r in results) == 3
    assert store.window_length("k") == 3


def test_clock_going_backwards_keeps_timestamps_ordered() -> None:
    store, clock = _store(start_ms=5_000)

    store.check("k", 1000, 10)
    clock.return_value = 4_000
    result = store.check("k", 1000, 10)

    assert result.admitted is True
    assert result.reset_at == 6_000


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_entries_per_key": 0},
        {"stale_after_ms": 0},
    ],
)
def test_invalid_constructor_args(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        InMemorySlidingWindowStore(**kwargs)


@pytest.mark.parametrize(
    ("key", "window_ms", "max_count"),
    [
        ("", 1000, 1),
        ("k", 0, 1),
        ("k", -5, 1),
        ("k", 1000, 0),
    ],
)
def test_invalid_check_args(key: str, window_ms: int, max_count: int) -> None:
    store = InMemorySlidingWindowStore()

    with pytest.raises(ValueError):
        store.check(key, window_ms, max_count)
