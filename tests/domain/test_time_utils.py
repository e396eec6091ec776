from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pos_sync.domain.time_utils import MonotonicClock, is_not_after, parse_timestamp, to_iso


def test_to_iso_ancho_fijo_con_sufijo_z() -> None:
    value = to_iso(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))

    assert value == "2026-03-01T09:00:00.000000Z"


def test_to_iso_asume_utc_si_no_hay_zona() -> None:
    assert to_iso(datetime(2026, 3, 1, 9, 0)) == "2026-03-01T09:00:00.000000Z"


def test_to_iso_convierte_otras_zonas_a_utc() -> None:
    madrid = timezone(timedelta(hours=1))

    assert to_iso(datetime(2026, 3, 1, 10, 0, tzinfo=madrid)) == "2026-03-01T09:00:00.000000Z"


def test_to_iso_ordena_como_texto() -> None:
    base = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    values = [to_iso(base + timedelta(microseconds=delta)) for delta in (0, 1, 999_999, 1_000_000)]

    assert values == sorted(values)


def test_parse_timestamp_acepta_z_y_vacios() -> None:
    assert parse_timestamp("2026-03-01T09:00:00Z") == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert parse_timestamp(None) is None
    assert parse_timestamp("  ") is None


def test_is_not_after() -> None:
    assert is_not_after("2026-03-01T09:00:00Z", "2026-03-01T09:00:00.000000Z")
    assert is_not_after("2026-03-01T08:00:00Z", "2026-03-01T09:00:00Z")
    assert not is_not_after("2026-03-01T10:00:00Z", "2026-03-01T09:00:00Z")
    assert not is_not_after(None, "2026-03-01T09:00:00Z")
    assert not is_not_after("2026-03-01T09:00:00Z", None)


def test_monotonic_clock_nunca_repite_ni_retrocede() -> None:
    readings = iter(
        [
            datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 1, 9, 5, tzinfo=timezone.utc),
        ]
    )
    clock = MonotonicClock(lambda: next(readings))

    values = [clock.now_iso() for _ in range(4)]

    assert values == sorted(values)
    assert len(set(values)) == 4
    assert values[1] == "2026-03-01T09:00:00.000001Z"
    assert values[2] == "2026-03-01T09:00:00.000002Z"
    assert values[3] == "2026-03-01T09:05:00.000000Z"
