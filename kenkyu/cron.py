"""
Cron expressions - parsing and next-run computation.

Supports the standard 5-field form (minute hour day-of-month month day-of-week)
and the aliases @daily, @midnight, @weekly, @monthly and @hourly.
Next runs are evaluated in the civil time of an IANA timezone and returned in UTC.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from kenkyu.errors import InputError

ALIASES = {
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
    "@hourly": "0 * * * *",
}

# (name, min, max) in expression order
FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 6),
)

MAX_SEARCH_MINUTES = 366 * 24 * 60
FALLBACK_DELAY = timedelta(hours=24)


class CronError(InputError):
    """Malformed cron expression."""


@dataclass(frozen=True)
class CronField:
    """One field predicate. `values` of None matches anything."""
    values: Optional[FrozenSet[int]] = None

    @property
    def is_any(self) -> bool:
        return self.values is None

    def matches(self, value: int) -> bool:
        return self.values is None or value in self.values


@dataclass(frozen=True)
class CronExpression:
    minute: CronField
    hour: CronField
    day_of_month: CronField
    month: CronField
    day_of_week: CronField

    def matches(self, local: datetime) -> bool:
        """Test a civil datetime against all five fields."""
        # Python weekday(): Monday=0 .. Sunday=6; cron: Sunday=0 .. Saturday=6
        cron_weekday = (local.weekday() + 1) % 7
        return (
            self.minute.matches(local.minute)
            and self.hour.matches(local.hour)
            and self.day_of_month.matches(local.day)
            and self.month.matches(local.month)
            and self.day_of_week.matches(cron_weekday)
        )


def _parse_int(text: str, name: str, field: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise CronError(f"Invalid value '{text}' in {name} field '{field}'")
    return int(text)


def _check_bounds(value: int, low: int, high: int, name: str, field: str):
    if value < low or value > high:
        raise CronError(f"{name.capitalize()} value {value} in '{field}' must be between {low} and {high}")


def _parse_range(text: str, low: int, high: int, name: str, field: str):
    start_text, sep, end_text = text.partition("-")
    start = _parse_int(start_text, name, field)
    end = _parse_int(end_text, name, field) if sep else start
    _check_bounds(start, low, high, name, field)
    _check_bounds(end, low, high, name, field)
    if start > end:
        raise CronError(f"{name.capitalize()} range '{text}' starts after it ends")
    return start, end


def parse_field(field: str, low: int, high: int, name: str = "field") -> CronField:
    """Parse one comma-separated cron field into a CronField."""
    if field == "*":
        return CronField()

    values = set()
    for segment in field.split(","):
        if "/" in segment:
            base, _, step_text = segment.partition("/")
            try:
                step = int(step_text)
            except ValueError:
                step = 0
            if step <= 0:
                raise CronError(f"Invalid step value '{step_text}' in {name} field '{field}'")

            if base == "*":
                start, end = low, high
            elif "-" in base:
                start, end = _parse_range(base, low, high, name, field)
            else:
                start = _parse_int(base, name, field)
                _check_bounds(start, low, high, name, field)
                end = high
            values.update(range(start, end + 1, step))
        else:
            start, end = _parse_range(segment, low, high, name, field)
            values.update(range(start, end + 1))

    return CronField(frozenset(values))


def parse_cron(expression: str) -> CronExpression:
    """Parse a 5-field expression or alias. Raises CronError on malformed input."""
    text = (expression or "").strip()
    text = ALIASES.get(text, text)

    parts = text.split()
    if len(parts) != len(FIELDS):
        raise CronError(f"Invalid cron expression: expected {len(FIELDS)} fields, got {len(parts)}")

    fields = [
        parse_field(part, low, high, name)
        for part, (name, low, high) in zip(parts, FIELDS)
    ]
    return CronExpression(*fields)


def validate_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name, raising InputError when unknown."""
    name = (name or "").strip()
    if not name:
        raise InputError("Timezone is required")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise InputError(f"Invalid timezone: '{name}'")


def next_run_at(expression: Union[str, CronExpression], timezone_name: str, after: datetime) -> datetime:
    """
    Next UTC instant strictly after `after` whose civil time in `timezone_name`
    matches the expression, at minute granularity.

    Candidates are UTC minutes, so spring-forward gaps are never produced and a
    repeated fall-back hour resolves to its first occurrence.
    Falls back to `after + 24h` when nothing matches within 366 days.
    """
    parsed = parse_cron(expression) if isinstance(expression, str) else expression
    zone = validate_timezone(timezone_name)

    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    after = after.astimezone(timezone.utc)

    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    for _ in range(MAX_SEARCH_MINUTES):
        if parsed.matches(candidate.astimezone(zone)):
            return candidate
        candidate += timedelta(minutes=1)

    return after + FALLBACK_DELAY
