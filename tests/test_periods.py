from datetime import date, datetime

from periods import (
    end_of_day,
    format_month_year,
    month_year_of,
    resolve_month_window,
    shift_month_year,
    start_of_day,
)


def test_month_year_arithmetic_crosses_years() -> None:
    assert month_year_of(date(2024, 1, 31)) == 202401
    assert shift_month_year(202401, -1) == 202312
    assert shift_month_year(202412, 1) == 202501
    assert shift_month_year(202406, -18) == 202212


def test_month_window() -> None:
    window = resolve_month_window(date(2024, 1, 15))

    assert (window.previous, window.current, window.next) == (202312, 202401, 202402)
    assert 202401 in window
    assert 202403 not in window


def test_day_bounds() -> None:
    day = date(2024, 2, 29)

    assert start_of_day(day) == datetime(2024, 2, 29, 0, 0)
    assert end_of_day(day) == datetime(2024, 2, 29, 23, 59, 59, 999999)
    assert format_month_year(202402) == "February 2024"
    assert format_month_year(None) == ""
