from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, time.max)


def month_year_of(day: date) -> int:
    return day.year * 100 + day.month


def shift_month_year(month_year: int, months: int) -> int:
    index = (month_year // 100) * 12 + (month_year % 100 - 1) + months
    return (index // 12) * 100 + index % 12 + 1


def format_month_year(month_year: Optional[int]) -> str:
    if not month_year:
        return ""
    return date(month_year // 100, month_year % 100, 1).strftime("%B %Y")


@dataclass(frozen=True)
class MonthWindow:
    previous: int
    current: int
    next: int

    def __contains__(self, month_year: object) -> bool:
        return month_year in (self.previous, self.current, self.next)


def resolve_month_window(today: Optional[date] = None) -> MonthWindow:
    today = today or date.today()
    current = month_year_of(today)
    return MonthWindow(
        previous=shift_month_year(current, -1),
        current=current,
        next=shift_month_year(current, 1),
    )
