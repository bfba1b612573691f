"""
Time-series bucketing and gap filling for chart generation.

Supported bucket kinds:
  - hour     start of the clock hour
  - day      calendar day
  - week     week starting on a configurable weekday (``CHARTFLOW_WEEK_START``,
             Monday by default)
  - month    first day of the month
  - quarter  first day of the quarter (Jan / Apr / Jul / Oct)
  - year     January 1st

Dates, datetimes and date strings (parsed with dateutil) are accepted.
Aware datetimes are normalised to UTC.  Null or unparseable values fall into
an "Unknown" bucket, sorted after every real period.

Range stepping uses ``relativedelta`` so month, quarter and year buckets
follow the calendar rather than a fixed duration.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from chartflow.analytics import aggregator
from chartflow.analytics.aggregator import AggregateKind
from chartflow.analytics.fields import get_field, hashable_key
from chartflow.core.config import get_settings


class BucketKind(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


UNKNOWN_LABEL = "Unknown"

_WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

_MONTH_ABBR = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
               "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_STEPS: dict[BucketKind, relativedelta] = {
    BucketKind.HOUR: relativedelta(hours=1),
    BucketKind.DAY: relativedelta(days=1),
    BucketKind.WEEK: relativedelta(weeks=1),
    BucketKind.MONTH: relativedelta(months=1),
    BucketKind.QUARTER: relativedelta(months=3),
    BucketKind.YEAR: relativedelta(years=1),
}

Period = date | datetime


@dataclass
class Bucket:
    """Records that fall into one calendar period."""
    period: Period | None
    label: str
    records: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"period": self.period, "label": self.label, "records": self.records}


# ── Parsing ─────────────────────────────────────────────


def weekday_index(week_start: str | int | None = None) -> int:
    """Resolve a weekday name (``"monday"``) or index (0 = Monday).

    None falls back to the configured ``week_start`` setting.
    """
    if week_start is None:
        week_start = get_settings().week_start
    if isinstance(week_start, int):
        if not 0 <= week_start <= 6:
            raise ValueError(f"Weekday index must be 0-6, got {week_start}")
        return week_start
    try:
        return _WEEKDAYS[week_start.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown week start '{week_start}'. Allowed: {', '.join(_WEEKDAYS)}"
        ) from None


def coerce_datetime(value: Any) -> date | datetime | None:
    """Turn a field value into a date or naive UTC datetime, or None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = date_parser.parse(text)
        except (ValueError, OverflowError):
            return None
        return coerce_datetime(parsed)
    return None


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


# ── Bucketing ───────────────────────────────────────────


def bucket_start(value: Any, kind: BucketKind | str, week_start: str | int | None = None) -> Period | None:
    """Canonical start of the bucket containing *value*, or None if unparseable."""
    kind = BucketKind(kind)
    moment = coerce_datetime(value)
    if moment is None:
        return None

    if kind is BucketKind.HOUR:
        if not isinstance(moment, datetime):
            return datetime(moment.year, moment.month, moment.day)
        return moment.replace(minute=0, second=0, microsecond=0)

    day = _as_date(moment)
    if kind is BucketKind.DAY:
        return day
    if kind is BucketKind.WEEK:
        offset = (day.weekday() - weekday_index(week_start)) % 7
        return day - timedelta(days=offset)
    if kind is BucketKind.MONTH:
        return day.replace(day=1)
    if kind is BucketKind.QUARTER:
        return date(day.year, 3 * ((day.month - 1) // 3) + 1, 1)
    return date(day.year, 1, 1)


def period_label(period: Period | None, kind: BucketKind | str) -> str:
    """Human-readable label for a bucket start."""
    if period is None:
        return UNKNOWN_LABEL
    kind = BucketKind(kind)
    if kind is BucketKind.HOUR:
        return period.strftime("%Y-%m-%d %H:00")
    day = _as_date(period)
    if kind is BucketKind.DAY:
        return day.isoformat()
    if kind is BucketKind.WEEK:
        iso = day.isocalendar()
        return f"Week {iso[1]}, {iso[0]}"
    if kind is BucketKind.MONTH:
        return f"{_MONTH_ABBR[day.month - 1]} {day.year}"
    if kind is BucketKind.QUARTER:
        return f"Q{(day.month - 1) // 3 + 1} {day.year}"
    return str(day.year)


def _period_sort_key(period: Period | None) -> tuple[bool, Any]:
    if period is None:
        return (True, datetime.min)
    if not isinstance(period, datetime):
        period = datetime(period.year, period.month, period.day)
    return (False, period)


def bucket(
    data: Iterable[Any],
    date_field: Any,
    kind: BucketKind | str,
    week_start: str | int | None = None,
) -> list[Bucket]:
    """Group records into calendar buckets sorted ascending by period.

    Records whose date is null or unparseable end up in a trailing bucket
    with ``period=None`` and the label ``"Unknown"``.
    """
    kind = BucketKind(kind)
    groups: dict[Period | None, list[Any]] = {}
    for record in data:
        start = bucket_start(get_field(record, date_field), kind, week_start)
        groups.setdefault(start, []).append(record)

    buckets = [
        Bucket(period=period, label=period_label(period, kind), records=records)
        for period, records in groups.items()
    ]
    return sorted(buckets, key=lambda b: _period_sort_key(b.period))


def bucket_and_aggregate(
    data: Iterable[Any],
    date_field: Any,
    value_field: Any,
    kind: BucketKind | str,
    aggregation: AggregateKind | str,
    week_start: str | int | None = None,
) -> list[dict[str, Any]]:
    """Bucket records and fold *value_field* per bucket.

    Returns ``[{"period", "label", "value"}, ...]`` ready for a line or area
    chart series.
    """
    return [
        {
            "period": b.period,
            "label": b.label,
            "value": aggregator.apply(aggregation, b.records, value_field),
        }
        for b in bucket(data, date_field, kind, week_start)
    ]


# ── Gap filling ─────────────────────────────────────────


def generate_periods(
    start: Any,
    end: Any,
    kind: BucketKind | str,
    week_start: str | int | None = None,
) -> list[Period]:
    """Every bucket start from *start* to *end*, inclusive of both ends."""
    kind = BucketKind(kind)
    first = bucket_start(start, kind, week_start)
    last = bucket_start(end, kind, week_start)
    if first is None or last is None:
        raise ValueError(f"Cannot build a {kind.value} range from {start!r} to {end!r}")

    step = _STEPS[kind]
    periods: list[Period] = []
    i = 0
    current = first
    while current <= last:
        periods.append(current)
        i += 1
        current = first + step * i
    return periods


def fill_gaps(
    data: Iterable[Any],
    date_field: str,
    kind: BucketKind | str,
    start: Any = None,
    end: Any = None,
    fill_value: Any = 0,
    value_field: str = "value",
    week_start: str | int | None = None,
) -> list[Any]:
    """Return one record per period in ``[start, end]``, inserting fillers.

    The range defaults to the earliest and latest parseable dates in *data*;
    with no dates and no explicit bounds the result is empty.  For every
    period missing from *data* a synthetic ``{date_field: period,
    value_field: fill_value}`` record is inserted.

    Only one record is kept per period: when several input records fall in
    the same bucket, the first one encountered wins.  Records with an
    unparseable date are dropped.
    """
    kind = BucketKind(kind)
    rows = list(data)

    if start is None or end is None:
        moments = [m for m in (coerce_datetime(get_field(r, date_field)) for r in rows) if m is not None]
        if not moments:
            if start is None and end is None:
                return []
            moments = [coerce_datetime(start if start is not None else end)]
        ordered = sorted(moments, key=_period_sort_key)
        start = ordered[0] if start is None else start
        end = ordered[-1] if end is None else end

    existing: dict[Any, Any] = {}
    for record in rows:
        period = bucket_start(get_field(record, date_field), kind, week_start)
        if period is not None:
            existing.setdefault(hashable_key(period), record)

    filled = []
    for period in generate_periods(start, end, kind, week_start):
        record = existing.get(hashable_key(period))
        if record is None:
            record = {date_field: period, value_field: fill_value}
        filled.append(record)
    return filled
