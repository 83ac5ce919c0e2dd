from datetime import datetime

from app.services.working_hours import is_within_office_hours, local_now, next_business_day_start

WEEKDAY = {"enabled": True, "start": "09:00", "end": "17:00"}

OFFICE_HOURS = {
    "enabled": True,
    "timezone": "Europe/Berlin",
    "schedule": {
        "monday": WEEKDAY,
        "tuesday": WEEKDAY,
        "wednesday": WEEKDAY,
        "thursday": WEEKDAY,
        "friday": WEEKDAY,
        "saturday": {"enabled": False},
    },
}


def test_missing_or_disabled_hours_are_always_open():
    assert is_within_office_hours(None)
    assert is_within_office_hours({"enabled": False})


def test_open_during_local_business_hours():
    # Wednesday 2024-06-05 08:30 UTC is 10:30 in Berlin (CEST)
    assert is_within_office_hours(OFFICE_HOURS, datetime(2024, 6, 5, 8, 30))


def test_closed_before_local_start():
    # 06:30 UTC is 08:30 in Berlin
    assert not is_within_office_hours(OFFICE_HOURS, datetime(2024, 6, 5, 6, 30))


def test_end_time_is_exclusive():
    # 15:00 UTC is 17:00 in Berlin
    assert not is_within_office_hours(OFFICE_HOURS, datetime(2024, 6, 5, 15, 0))
    assert is_within_office_hours(OFFICE_HOURS, datetime(2024, 6, 5, 14, 59))


def test_disabled_and_missing_days_are_closed():
    # Saturday and Sunday
    assert not is_within_office_hours(OFFICE_HOURS, datetime(2024, 6, 8, 10, 0))
    assert not is_within_office_hours(OFFICE_HOURS, datetime(2024, 6, 9, 10, 0))


def test_unknown_timezone_falls_back_to_default():
    hours = dict(OFFICE_HOURS, timezone="Mars/Olympus")
    assert local_now(hours, datetime(2024, 6, 5, 8, 30)).hour == 10


def test_next_business_day_skips_weekend():
    # Friday evening in Berlin -> Monday 08:00 CEST = 06:00 UTC
    assert next_business_day_start(OFFICE_HOURS, datetime(2024, 6, 7, 18, 0)) == datetime(2024, 6, 10, 6, 0)


def test_next_business_day_during_week():
    # Tuesday evening -> Wednesday 08:00 CEST
    assert next_business_day_start(OFFICE_HOURS, datetime(2024, 6, 4, 19, 0)) == datetime(2024, 6, 5, 6, 0)
