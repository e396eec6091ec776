from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pos_sync.application.backoff import CycleBackoff, RetryPolicy

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def test_delay_crece_exponencialmente_sin_jitter() -> None:
    policy = RetryPolicy()

    delays = [policy.delay_for(attempt, rng=lambda: 0.0) for attempt in (1, 2, 3, 4)]

    assert delays == [1.0, 2.0, 4.0, 8.0]


def test_delay_respeta_el_tope() -> None:
    policy = RetryPolicy(max_delay_seconds=30.0)

    assert policy.delay_for(50, rng=lambda: 0.0) == 30.0
    assert policy.delay_for(5000, rng=lambda: 0.0) == 30.0


def test_jitter_se_suma_al_delay() -> None:
    policy = RetryPolicy(jitter_seconds=2.0)

    assert policy.delay_for(1, rng=lambda: 0.5) == 2.0


def test_next_retry_at() -> None:
    policy = RetryPolicy()

    assert policy.next_retry_at(NOW, 3, rng=lambda: 0.0) == NOW + timedelta(seconds=4)


def test_cycle_backoff_acumula_y_se_resetea() -> None:
    backoff = CycleBackoff(RetryPolicy(), rng=lambda: 0.0)

    assert not backoff.is_active(NOW)
    first = backoff.record_failure(NOW)
    second = backoff.record_failure(NOW)

    assert first == NOW + timedelta(seconds=1)
    assert second == NOW + timedelta(seconds=2)
    assert backoff.consecutive_failures == 2
    assert backoff.is_active(NOW + timedelta(seconds=1))
    assert backoff.remaining_seconds(NOW) == 2.0
    assert not backoff.is_active(NOW + timedelta(seconds=2))

    backoff.reset()

    assert backoff.consecutive_failures == 0
    assert backoff.until is None
    assert backoff.remaining_seconds(NOW) == 0.0
