"""Date-range filtering over visit records.

Visit dates are zero-padded ISO strings, so plain string comparison is a total
order and no date parsing is needed for filtering.
"""

from __future__ import annotations

import calendar
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from painclinic.records import PatientRecord


@dataclass(frozen=True)
class DateRange:
    """Inclusive visit-date interval. An empty bound means "no filter"."""

    start: str = ""
    end: str = ""

    @property
    def is_unbounded(self) -> bool:
        return not self.start or not self.end

    def contains(self, visit_date: str) -> bool:
        if self.is_unbounded:
            return True
        return self.start <= visit_date <= self.end


def filter_by_date_range(records: Sequence[PatientRecord], date_range: DateRange) -> list[PatientRecord]:
    """Return the records whose visit date falls inside ``date_range``."""
    if date_range.is_unbounded:
        return list(records)
    return [r for r in records if date_range.contains(r.visit_date)]


def available_dates(records: Iterable[PatientRecord]) -> list[str]:
    """Sorted distinct non-empty visit dates."""
    return sorted({r.visit_date for r in records if r.visit_date})


def full_range(records: Iterable[PatientRecord]) -> DateRange:
    """Range spanning every visit date present (unbounded if there are none)."""
    dates = available_dates(records)
    if not dates:
        return DateRange()
    return DateRange(dates[0], dates[-1])


def available_years(dates: Iterable[str]) -> list[str]:
    """Distinct YYYY prefixes, most recent first."""
    return sorted({d.split("-")[0] for d in dates if d}, reverse=True)


def year_range(year: str) -> DateRange:
    return DateRange(f"{year}-01-01", f"{year}-12-31")


def month_range(year: str, month: str) -> DateRange:
    """First to last calendar day of ``year``-``month`` (month as "01".."12")."""
    last_day = calendar.monthrange(int(year), int(month))[1]
    return DateRange(f"{year}-{month}-01", f"{year}-{month}-{last_day:02d}")


def selected_year(date_range: DateRange) -> str:
    """Year both bounds fall in, or '' when the range spans years."""
    start_year = date_range.start.split("-")[0]
    end_year = date_range.end.split("-")[0]
    if start_year and start_year == end_year:
        return start_year
    return ""


def selected_month(date_range: DateRange) -> str:
    """Month ("01".."12") when the range covers exactly one whole month, else ''."""
    start = date_range.start.split("-")
    end = date_range.end.split("-")
    if len(start) != 3 or len(end) != 3 or start[:2] != end[:2]:
        return ""
    try:
        last_day = calendar.monthrange(int(start[0]), int(start[1]))[1]
        if int(start[2]) == 1 and int(end[2]) == last_day:
            return start[1]
    except ValueError:
        return ""
    return ""
