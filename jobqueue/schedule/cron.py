"""
Five-field cron expressions evaluated in UTC.

Fields are minute, hour, day of month, month and day of week. Each accepts
``*``, numbers, ranges (``1-5``), lists (``1,15``) and steps (``*/15``,
``10-50/20``, ``5/10``). Months and weekdays also take three-letter names.
Day of week runs 0-7 with both 0 and 7 meaning Sunday. When both day fields
are restricted a time matches if either does, as in Vixie cron.
"""

from datetime import UTC, datetime, timedelta

from jobqueue.constants import SCHEDULE_PRESETS

_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"),
        start=1,
    )
}
_DAY_NAMES = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}

# (name, minimum, maximum, names)
_FIELDS = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day", 1, 31, {}),
    ("month", 1, 12, _MONTH_NAMES),
    ("weekday", 0, 7, _DAY_NAMES),
)

# A satisfiable expression matches within one leap cycle of weekdays
_SEARCH_YEARS = 28

_MINUTE = timedelta(minutes=1)


def _parse_value(text: str, name: str, names: dict[str, int]) -> int:
    lowered = text.lower()
    if lowered in names:
        return names[lowered]
    if not text.isdigit():
        raise ValueError(f"invalid {name} value {text!r}")
    return int(text)


def _parse_field(
    text: str, name: str, low: int, high: int, names: dict[str, int]
) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise ValueError(f"empty entry in {name} field {text!r}")

        body, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) < 1:
                raise ValueError(f"invalid step in {name} field {part!r}")
            step = int(step_text)

        if body == "*":
            start, end = low, high
        elif "-" in body:
            first, _, last = body.partition("-")
            start = _parse_value(first, name, names)
            end = _parse_value(last, name, names)
        else:
            start = _parse_value(body, name, names)
            end = high if step_text else start

        if not low <= start <= high or not low <= end <= high:
            raise ValueError(f"{name} field {part!r} out of range {low}-{high}")
        if start > end:
            raise ValueError(f"reversed range in {name} field {part!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class CronExpression:
    """
    A parsed cron expression.

    Example:
        cron = CronExpression("*/15 9-17 * * mon-fri")
        cron.next_after(datetime(2026, 10, 19, 9, 7, tzinfo=UTC))
        # 2026-10-19 09:15:00+00:00
    """

    def __init__(self, expression: str):
        """
        Args:
            expression: Five whitespace-separated fields, or a preset such as
                ``@hourly``.

        Raises:
            ValueError: The expression cannot be parsed.
        """
        if not isinstance(expression, str):
            raise ValueError("cron expression must be a string")
        self.expression = expression.strip()
        fields = SCHEDULE_PRESETS.get(self.expression.lower(), self.expression).split()
        if len(fields) != len(_FIELDS):
            raise ValueError(
                f"cron expression {expression!r} must have {len(_FIELDS)} fields, "
                f"got {len(fields)}"
            )

        parsed = [
            _parse_field(text, name, low, high, names)
            for text, (name, low, high, names) in zip(fields, _FIELDS)
        ]
        self.minutes, self.hours, self.days, self.months, weekdays = parsed
        self.weekdays = frozenset(day % 7 for day in weekdays)

        # Vixie cron treats a field starting with "*" as unrestricted here
        self._any_day = fields[2].startswith("*")
        self._any_weekday = fields[4].startswith("*")

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"

    def _day_matches(self, value: datetime) -> bool:
        in_days = value.day in self.days
        # datetime counts Monday as 0, cron counts Sunday as 0
        in_weekdays = (value.weekday() + 1) % 7 in self.weekdays
        if self._any_day and self._any_weekday:
            return True
        if self._any_day:
            return in_weekdays
        if self._any_weekday:
            return in_days
        return in_days or in_weekdays

    def matches(self, value: datetime) -> bool:
        """Check whether the minute containing value is a scheduled slot."""
        value = _as_utc(value)
        return (
            value.minute in self.minutes
            and value.hour in self.hours
            and value.month in self.months
            and self._day_matches(value)
        )

    def next_after(self, value: datetime) -> datetime:
        """
        Earliest slot strictly after value.

        Raises:
            ValueError: The expression can never match (e.g. ``0 0 30 2 *``).
        """
        start = _as_utc(value)
        current = start.replace(second=0, microsecond=0) + _MINUTE
        limit = start.year + _SEARCH_YEARS

        while current.year <= limit:
            if current.month not in self.months:
                year, month = divmod(current.year * 12 + current.month, 12)
                current = current.replace(year=year, month=month + 1, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(current):
                current = current.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if current.hour not in self.hours:
                current = current.replace(minute=0) + timedelta(hours=1)
                continue
            if current.minute not in self.minutes:
                current += _MINUTE
                continue
            return current

        raise ValueError(f"cron expression {self.expression!r} never matches")

    def latest_at_or_before(self, value: datetime) -> datetime:
        """
        Latest slot at or before value.

        Raises:
            ValueError: The expression can never match.
        """
        start = _as_utc(value)
        current = start.replace(second=0, microsecond=0)
        limit = start.year - _SEARCH_YEARS

        while current.year >= limit:
            if current.month not in self.months:
                current = current.replace(day=1, hour=0, minute=0) - _MINUTE
                continue
            if not self._day_matches(current):
                current = current.replace(hour=0, minute=0) - _MINUTE
                continue
            if current.hour not in self.hours:
                current = current.replace(minute=0) - _MINUTE
                continue
            if current.minute not in self.minutes:
                current -= _MINUTE
                continue
            return current

        raise ValueError(f"cron expression {self.expression!r} never matches")
