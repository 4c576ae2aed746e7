import datetime as dt

from betapp.config import DEFAULT_TIMEZONE_NAME
from betapp.utils.time_utils import (
    elapsed_seconds,
    ensure_utc,
    format_local,
    format_remaining,
    now_utc,
    remaining_window,
    to_local,
)


def test_now_utc_returns_aware_datetime():
    value = now_utc()
    assert value.tzinfo is not None
    assert value.tzinfo.utcoffset(value) == dt.timedelta(0)


def test_ensure_utc_treats_naive_values_as_utc():
    naive = dt.datetime(2024, 1, 1, 12, 0)
    tehran = dt.datetime(2024, 1, 1, 15, 30, tzinfo=dt.timezone(dt.timedelta(hours=3, minutes=30)))

    assert ensure_utc(naive) == dt.datetime(2024, 1, 1, 12, 0, tzinfo=dt.timezone.utc)
    assert ensure_utc(tehran).hour == 12
    assert ensure_utc(tehran).utcoffset() == dt.timedelta(0)


def test_to_local_handles_european_dst_transition():
    before_dst = to_local(
        dt.datetime(2024, 3, 31, 0, 30, tzinfo=dt.timezone.utc), tz_name="Europe/Berlin"
    )
    after_dst = to_local(
        dt.datetime(2024, 3, 31, 1, 30, tzinfo=dt.timezone.utc), tz_name="Europe/Berlin"
    )

    assert before_dst.hour == 1
    assert before_dst.utcoffset() == dt.timedelta(hours=1)
    assert after_dst.hour == 3
    assert after_dst.utcoffset() == dt.timedelta(hours=2)


def test_format_local_uses_utc_baseline():
    start = dt.datetime(2024, 1, 1, 12, 0)

    assert format_local(start, "%H:%M", tz_name="Asia/Tehran") == "15:30"


def test_to_local_normalizes_timezone_name_inputs():
    base = dt.datetime(2024, 6, 1, 12, 0, tzinfo=dt.timezone.utc)

    trimmed = to_local(base, tz_name="  Europe/Berlin  ")
    explicit = to_local(base, tz_name="Europe/Berlin")
    fallback = to_local(base, tz_name="   ")
    unknown = to_local(base, tz_name="Mars/Olympus_Mons")

    assert trimmed == explicit
    assert fallback == to_local(base, tz_name=DEFAULT_TIMEZONE_NAME)
    assert unknown == to_local(base, tz_name=DEFAULT_TIMEZONE_NAME)


def test_elapsed_and_remaining_window_never_go_negative():
    created = dt.datetime(2024, 1, 1, 12, 0, tzinfo=dt.timezone.utc)

    assert elapsed_seconds(created, now=created + dt.timedelta(seconds=61.9)) == 61
    assert elapsed_seconds(created, now=created - dt.timedelta(seconds=5)) == 0
    assert remaining_window(created, 300, now=created + dt.timedelta(seconds=60)) == 240
    assert remaining_window(created, 300, now=created + dt.timedelta(seconds=301)) == 0


def test_format_remaining():
    assert format_remaining(252) == "4m 12s"
    assert format_remaining(60) == "1m 0s"
    assert format_remaining(42) == "42s"
    assert format_remaining(-3) == "0s"
