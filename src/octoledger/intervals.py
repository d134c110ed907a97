"""Half-hour interval math.

Pure functions for bucketing timestamps into half-hour settlement periods,
detecting gaps and splitting time ranges into windows. No I/O.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Iterator

from .models import MissingRange

BUCKET = timedelta(minutes=30)


def parse_timestamp(value: str | datetime | date) -> datetime:
    """Parse an ISO-8601 value into an aware UTC datetime.

    Accepts a trailing 'Z', explicit offsets, naive timestamps (taken as UTC)
    and bare dates (midnight UTC).
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Render the canonical stored form, e.g. 2026-02-15T10:00:00+00:00."""
    return parse_timestamp(dt).replace(microsecond=0).isoformat()


def floor_to_bucket(dt: datetime) -> datetime:
    """Round a datetime down to the start of its half-hour bucket."""
    dt = parse_timestamp(dt)
    minute = 0 if dt.minute < 30 else 30
    return dt.replace(minute=minute, second=0, microsecond=0)


def ceil_to_bucket(dt: datetime) -> datetime:
    """Round a datetime up to the next half-hour boundary (identity if aligned)."""
    floored = floor_to_bucket(dt)
    if floored == parse_timestamp(dt):
        return floored
    return floored + BUCKET


class BucketRange:
    """Half-hour bucket starts in [start, end).

    Iterable any number of times; supports len() and membership tests.
    """

    def __init__(self, start: datetime, end: datetime):
        self.start = ceil_to_bucket(start)
        self.end = parse_timestamp(end)

    def __iter__(self) -> Iterator[datetime]:
        cursor = self.start
        while cursor < self.end:
            yield cursor
            cursor += BUCKET

    def __len__(self) -> int:
        if self.end <= self.start:
            return 0
        span = self.end - self.start
        return -(-span // BUCKET)

    def __contains__(self, value: object) -> bool:
        if not isinstance(value, datetime):
            return False
        dt = parse_timestamp(value)
        return self.start <= dt < self.end and floor_to_bucket(dt) == dt

    def __repr__(self) -> str:
        return f"BucketRange({to_iso(self.start)}, {to_iso(self.end)})"


def expected_buckets(start: datetime, end: datetime) -> BucketRange:
    """All half-hour bucket starts expected in [start, end)."""
    return BucketRange(start, end)


def find_missing_ranges(
    stored_starts: Iterable[datetime], start: datetime, end: datetime
) -> list[MissingRange]:
    """Coalesce buckets absent from stored_starts into contiguous ranges."""
    stored = {parse_timestamp(s) for s in stored_starts}
    missing = [bucket for bucket in expected_buckets(start, end) if bucket not in stored]

    if not missing:
        return []

    ranges = []
    range_start = missing[0]
    previous = missing[0]

    for current in missing[1:]:
        if current - previous == BUCKET:
            previous = current
            continue
        ranges.append(_make_range(range_start, previous))
        range_start = current
        previous = current

    ranges.append(_make_range(range_start, previous))
    return ranges


def _make_range(first: datetime, last: datetime) -> MissingRange:
    return MissingRange(
        start=first,
        end=last + BUCKET,
        missing_interval_count=(last - first) // BUCKET + 1,
    )


def allocate_across_buckets(
    range_start: datetime, range_end: datetime, total_quantity: float
) -> list[tuple[datetime, float]]:
    """Distribute a quantity over the half-hour buckets a time range touches.

    Each bucket receives a share proportional to its overlap with the range,
    e.g. a charging session known only as start/end/kWh expressed per
    settlement period. Returns (bucket_start, amount) pairs; an empty list
    for zero-length or inverted ranges.
    """
    start = parse_timestamp(range_start)
    end = parse_timestamp(range_end)
    if end <= start:
        return []

    duration = (end - start).total_seconds()
    allocations = []
    bucket = floor_to_bucket(start)

    while bucket < end:
        overlap_start = max(bucket, start)
        overlap_end = min(bucket + BUCKET, end)
        overlap = (overlap_end - overlap_start).total_seconds()
        if overlap > 0:
            allocations.append((bucket, total_quantity * overlap / duration))
        bucket += BUCKET

    return allocations


def overlap_period(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> tuple[datetime, datetime] | None:
    """Intersection of two half-open periods, or None when they don't overlap."""
    start = max(parse_timestamp(start_a), parse_timestamp(start_b))
    end = min(parse_timestamp(end_a), parse_timestamp(end_b))
    if start >= end:
        return None
    return start, end


def split_into_windows(
    start: datetime, end: datetime, window_days: int = 30
) -> list[tuple[datetime, datetime]]:
    """Split [start, end) into consecutive windows of at most window_days."""
    windows = []
    cursor = parse_timestamp(start)
    end = parse_timestamp(end)
    step = timedelta(days=window_days)

    while cursor < end:
        following = cursor + step
        windows.append((cursor, min(following, end)))
        cursor = following

    return windows


def month_start(dt: datetime) -> datetime:
    dt = parse_timestamp(dt)
    return datetime(dt.year, dt.month, 1, tzinfo=timezone.utc)


def add_months(dt: datetime, months: int) -> datetime:
    """First day of the month `months` away from dt's month (UTC midnight)."""
    dt = parse_timestamp(dt)
    index = dt.year * 12 + (dt.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1, tzinfo=timezone.utc)


def month_ranges(
    start: datetime, end: datetime, max_months: int
) -> list[tuple[datetime, datetime, str]]:
    """Calendar months covering start..end as (from, to, 'YYYY-MM') triples."""
    first = month_start(start)
    last = month_start(end)
    months = []
    cursor = first

    while cursor <= last and len(months) < max_months:
        following = add_months(cursor, 1)
        months.append((cursor, following, cursor.strftime("%Y-%m")))
        cursor = following

    return months


def day_windows(
    start: datetime, end: datetime, days: int
) -> list[tuple[datetime, datetime]]:
    """Consecutive windows of `days` days from start, the last one cut at end."""
    return split_into_windows(start, end, window_days=days)
