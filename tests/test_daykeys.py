from datetime import date, datetime

import pytz

import daykeys


NY = "America/New_York"


def utc(*args):
    return datetime(*args, tzinfo=pytz.utc)


def test_day_key_is_stable_within_a_local_day():
    # 00:30 EST and 23:30 EDT on the DST change day (2024-03-10)
    early = utc(2024, 3, 10, 5, 30)
    late = utc(2024, 3, 11, 3, 30)
    assert daykeys.day_key(early, NY) == date(2024, 3, 10)
    assert daykeys.day_key(late, NY) == date(2024, 3, 10)


def test_day_key_increases_across_dst_transitions():
    instants = [utc(2024, 11, 2, 16), utc(2024, 11, 3, 16), utc(2024, 11, 4, 16)]
    keys = [daykeys.day_key(i, NY) for i in instants]
    assert keys == [date(2024, 11, 2), date(2024, 11, 3), date(2024, 11, 4)]
    assert keys[0] < keys[1] < keys[2]


def test_late_evening_and_next_morning_are_different_days():
    eleven_pm = utc(2024, 1, 16, 4, 0)   # 23:00 EST on the 15th
    six_am = utc(2024, 1, 16, 11, 0)     # 06:00 EST on the 16th
    assert daykeys.day_key(eleven_pm, NY) < daykeys.day_key(six_am, NY)


def test_naive_datetime_is_read_as_utc():
    assert daykeys.day_key(datetime(2024, 1, 1, 3, 0), NY) == date(2023, 12, 31)


def test_date_passes_through():
    assert daykeys.day_key(date(2024, 5, 5), NY) == date(2024, 5, 5)


def test_unknown_timezone_falls_back_to_default():
    instant = utc(2024, 1, 1, 3, 0)
    assert daykeys.day_key(instant, "Not/AZone") == daykeys.day_key(instant, daykeys.APP_TIMEZONE)


def test_day_range_is_inclusive():
    days = daykeys.day_range(date(2024, 2, 27), date(2024, 3, 1))
    assert days == [date(2024, 2, 27), date(2024, 2, 28), date(2024, 2, 29), date(2024, 3, 1)]
    assert daykeys.day_range(date(2024, 3, 2), date(2024, 3, 1)) == []


def test_weekday_index():
    assert daykeys.weekday_index("Monday") == 0
    assert daykeys.weekday_index(" sunday ") == 6
    assert daykeys.weekday_index("funday") is None
    assert daykeys.weekday_index(None) is None


def test_first_weigh_in_day():
    # 2024-01-04 is a Thursday → next Monday
    assert daykeys.first_weigh_in_day(date(2024, 1, 4), "monday") == date(2024, 1, 8)
    # 2024-01-01 is already a Monday
    assert daykeys.first_weigh_in_day(date(2024, 1, 1), "monday") == date(2024, 1, 1)
    assert daykeys.first_weigh_in_day(date(2024, 1, 1), None) is None
