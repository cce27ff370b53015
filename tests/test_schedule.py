from datetime import datetime, timedelta

import pytest

from worker.app.schedule import format_duration, next_run_after, parse_duration, validate_schedule


@pytest.mark.parametrize(
    "value,expected",
    [
        ("7D", timedelta(days=7)),
        ("24h", timedelta(hours=24)),
        ("90m", timedelta(minutes=90)),
        ("2W", timedelta(weeks=2)),
        ("45", timedelta(seconds=45)),
        (3600, timedelta(hours=1)),
        (None, None),
    ],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


def test_parse_duration_rejects_garbage():
    with pytest.raises(ValueError):
        parse_duration("soon")


def test_format_duration_picks_largest_unit():
    assert format_duration(timedelta(days=14)) == "2W"
    assert format_duration(timedelta(hours=36)) == "36h"
    assert format_duration(timedelta(seconds=61)) == "61s"


def test_validate_schedule():
    assert validate_schedule(" 30 2 * * * ") == "30 2 * * *"
    assert validate_schedule("@every 6h") == "@every 6h"
    assert validate_schedule("@daily") == "@daily"
    with pytest.raises(ValueError):
        validate_schedule("")
    with pytest.raises(ValueError):
        validate_schedule("61 * * * *")
    with pytest.raises(ValueError):
        validate_schedule("@every 0s")


def test_cron_next_run_is_strictly_after_now():
    now = datetime(2024, 1, 1, 2, 30, 0)
    assert next_run_after("30 2 * * *", now) == datetime(2024, 1, 2, 2, 30)
    assert next_run_after("30 2 * * *", now - timedelta(seconds=1)) == now


def test_cron_ignores_sub_second_offset():
    now = datetime(2024, 1, 1, 2, 59, 59, 500000)
    assert next_run_after("@hourly", now) == datetime(2024, 1, 1, 3, 0)


def test_aliases():
    now = datetime(2024, 1, 3, 10, 0)  # a Wednesday
    assert next_run_after("@daily", now) == datetime(2024, 1, 4)
    assert next_run_after("@weekly", now) == datetime(2024, 1, 7)
    assert next_run_after("@monthly", now) == datetime(2024, 2, 1)


def test_missed_cron_slots_coalesce():
    # Scheduler was down for three days: one next slot, not three.
    now = datetime(2024, 1, 4, 12, 0)
    assert next_run_after("0 0 * * *", now) == datetime(2024, 1, 5)


def test_interval_is_anchored():
    anchor = datetime(2024, 1, 1, 0, 0)
    assert next_run_after("@every 1h", anchor, anchor=anchor) == datetime(2024, 1, 1, 1, 0)
    assert next_run_after("@every 1h", datetime(2024, 1, 1, 5, 20), anchor=anchor) == datetime(2024, 1, 1, 6, 0)
    assert next_run_after("@every 1h", datetime(2024, 1, 1, 6, 0), anchor=anchor) == datetime(2024, 1, 1, 7, 0)
    assert next_run_after("@every 1h", datetime(2023, 12, 31), anchor=anchor) == anchor
