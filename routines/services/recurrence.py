"""Service for validating routine schedules and expanding them into concrete
occurrence slots.

Expansion runs on local wall-clock time with ``dateutil.rrule`` and converts
every generated instant to UTC on its own, so a "09:00 local" rule stays at
09:00 local on both sides of a daylight-saving transition.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.rrule import (
    DAILY,
    MONTHLY,
    WEEKLY,
    FR,
    MO,
    SA,
    SU,
    TH,
    TU,
    WE,
    rrule,
)

from routines.domain.errors import ValidationError
from routines.domain.models import (
    Frequency,
    OccurrenceSlot,
    RecurrenceRule,
    Schedule,
    ScheduleType,
    Weekday,
    Window,
)

_DAY_MAP = {
    Weekday.MO: MO,
    Weekday.TU: TU,
    Weekday.WE: WE,
    Weekday.TH: TH,
    Weekday.FR: FR,
    Weekday.SA: SA,
    Weekday.SU: SU,
}

_FREQ_MAP = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
}

_SUPPORTED_RRULE_PARTS = {"FREQ", "INTERVAL", "BYDAY", "COUNT", "UNTIL", "WKST"}

_FAR_FUTURE = datetime(9000, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Time zone helpers
# ---------------------------------------------------------------------------


def resolve_timezone(tz_id: str) -> ZoneInfo:
    """Return the IANA zone for *tz_id* or raise ValidationError."""
    try:
        return ZoneInfo(tz_id)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise ValidationError(f"Unknown timezone: {tz_id!r}") from exc


def to_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Naive wall-clock time in *tz*. Naive input is already local."""
    if value.tzinfo is None:
        return value
    return value.astimezone(tz).replace(tzinfo=None)


def to_utc(local: datetime, tz: ZoneInfo) -> datetime:
    """Resolve a naive wall-clock time in *tz* to an aware UTC instant.

    Times inside a spring-forward gap take the offset in force before the
    transition (they move forward by the gap); times repeated by a fall-back
    transition resolve to their first occurrence unless ``fold`` says
    otherwise.
    """
    return local.replace(tzinfo=tz).astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_rule(rule: RecurrenceRule) -> None:
    if rule.interval < 1:
        raise ValidationError("interval must be a positive integer")
    if rule.count is not None and rule.count < 1:
        raise ValidationError("count must be a positive integer")
    if rule.count is not None and rule.until is not None:
        raise ValidationError("count and until are mutually exclusive")
    if rule.weekdays is not None:
        if rule.frequency != Frequency.WEEKLY:
            raise ValidationError("a weekday list is only valid with weekly frequency")
        if not rule.weekdays:
            raise ValidationError("weekday list must contain at least one weekday")


def validate_schedule(schedule: Schedule) -> None:
    """Raise ValidationError unless *schedule* can be expanded."""
    if schedule.duration <= timedelta(0):
        raise ValidationError("duration must be positive")
    tz = resolve_timezone(schedule.timezone)

    if schedule.schedule_type == ScheduleType.RECURRING:
        if schedule.recurrence_rule is None:
            raise ValidationError("a recurring schedule requires a recurrence rule")
        validate_rule(schedule.recurrence_rule)
    elif schedule.recurrence_rule is not None:
        raise ValidationError("a one-time schedule cannot carry a recurrence rule")

    if schedule.end_datetime is not None and to_local(
        schedule.end_datetime, tz
    ) < to_local(schedule.start_datetime, tz):
        raise ValidationError("end_datetime must not be before start_datetime")


# ---------------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------------


def _build_rrule(schedule: Schedule, tz: ZoneInfo) -> rrule:
    rule = schedule.recurrence_rule
    byweekday = None
    if rule.weekdays:
        byweekday = [_DAY_MAP[d] for d in sorted(set(rule.weekdays), key=list(Weekday).index)]
    return rrule(
        _FREQ_MAP[rule.frequency],
        dtstart=to_local(schedule.start_datetime, tz),
        interval=rule.interval,
        wkst=MO,
        byweekday=byweekday,
        count=rule.count,
        until=to_local(rule.until, tz) if rule.until is not None else None,
    )


def _local_starts(schedule: Schedule, tz: ZoneInfo) -> Iterator[datetime]:
    if schedule.schedule_type == ScheduleType.ONE_TIME:
        yield to_local(schedule.start_datetime, tz)
        return

    end_bound = None
    if schedule.end_datetime is not None:
        end_bound = to_local(schedule.end_datetime, tz)
    for local in _build_rrule(schedule, tz):
        if end_bound is not None and local > end_bound:
            return
        yield local


def _iter_slots(schedule: Schedule, window: Window) -> Iterator[OccurrenceSlot]:
    tz = resolve_timezone(schedule.timezone)
    previous: datetime | None = None
    for local in _local_starts(schedule, tz):
        start = to_utc(local, tz)
        if start >= window.end:
            return
        if start < window.start or start == previous:
            continue
        previous = start
        yield OccurrenceSlot(start=start, end=start + schedule.duration)


class Expansion:
    """Lazy, finite and restartable sequence of occurrence slots.

    Each iteration re-runs the expansion from the schedule's start, so the
    object can be iterated any number of times with identical results.
    """

    def __init__(self, schedule: Schedule, window: Window) -> None:
        validate_schedule(schedule)
        self.schedule = schedule
        self.window = window

    def __iter__(self) -> Iterator[OccurrenceSlot]:
        return _iter_slots(self.schedule, self.window)

    def starts(self) -> list[datetime]:
        return [slot.start for slot in self]


def expand_schedule(schedule: Schedule, window: Window) -> Expansion:
    """Return the occurrence slots of *schedule* whose start lies in *window*."""
    return Expansion(schedule, window)


def next_occurrence(schedule: Schedule, after: datetime) -> OccurrenceSlot | None:
    """First slot starting strictly after *after*, or None once the series ended."""
    window = Window(start=after + timedelta(microseconds=1), end=_FAR_FUTURE)
    return next(iter(expand_schedule(schedule, window)), None)


def is_bounded(schedule: Schedule) -> bool:
    if schedule.schedule_type == ScheduleType.ONE_TIME:
        return True
    rule = schedule.recurrence_rule
    return bool(
        schedule.end_datetime is not None
        or (rule is not None and (rule.count is not None or rule.until is not None))
    )


def last_occurrence(schedule: Schedule) -> OccurrenceSlot | None:
    """Final slot of a bounded schedule; None for open-ended rules."""
    if not is_bounded(schedule):
        return None
    validate_schedule(schedule)
    tz = resolve_timezone(schedule.timezone)
    window = Window(
        start=to_utc(to_local(schedule.start_datetime, tz), tz) - timedelta(days=1),
        end=_FAR_FUTURE,
    )
    last = None
    for slot in expand_schedule(schedule, window):
        last = slot
    return last


# ---------------------------------------------------------------------------
# RRULE text
# ---------------------------------------------------------------------------


def compile_rrule(rule: RecurrenceRule) -> str:
    """Compile a RecurrenceRule into an iCalendar RRULE value string."""
    validate_rule(rule)
    parts = [f"FREQ={rule.frequency.value.upper()}"]
    if rule.interval > 1:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.weekdays:
        ordered = sorted(set(rule.weekdays), key=list(Weekday).index)
        parts.append("BYDAY=" + ",".join(d.value for d in ordered))
    if rule.count is not None:
        parts.append(f"COUNT={rule.count}")
    if rule.until is not None:
        if rule.until.tzinfo is None:
            parts.append(f"UNTIL={rule.until.strftime('%Y%m%dT%H%M%S')}")
        else:
            until = rule.until.astimezone(timezone.utc)
            parts.append(f"UNTIL={until.strftime('%Y%m%dT%H%M%SZ')}")
    return ";".join(parts)


def _parse_until(raw: str) -> datetime:
    for fmt, aware in (("%Y%m%dT%H%M%SZ", True), ("%Y%m%dT%H%M%S", False)):
        try:
            parsed = datetime.strptime(raw, fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=timezone.utc) if aware else parsed
    try:
        day = datetime.strptime(raw, "%Y%m%d")
    except ValueError as exc:
        raise ValidationError(f"Invalid UNTIL value: {raw!r}") from exc
    # A date-only UNTIL includes the whole day
    return day.replace(hour=23, minute=59, second=59)


def _parse_positive_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from exc


def parse_rrule(text: str) -> RecurrenceRule:
    """Parse the supported RRULE subset (FREQ, INTERVAL, BYDAY, COUNT, UNTIL).

    Any other rule part, or a weekday with an ordinal prefix, is rejected.
    """
    body = text.strip()
    if body.upper().startswith("RRULE:"):
        body = body[len("RRULE:"):]
    if not body:
        raise ValidationError("empty recurrence rule")

    fields: dict[str, str] = {}
    for part in body.split(";"):
        if not part:
            continue
        name, sep, value = part.partition("=")
        name = name.strip().upper()
        if not sep or not value.strip():
            raise ValidationError(f"Malformed rule part: {part!r}")
        if name not in _SUPPORTED_RRULE_PARTS:
            raise ValidationError(f"Unsupported rule part: {name}")
        if name in fields:
            raise ValidationError(f"Duplicate rule part: {name}")
        fields[name] = value.strip().upper()

    if "FREQ" not in fields:
        raise ValidationError("FREQ is required")
    try:
        frequency = Frequency(fields["FREQ"].lower())
    except ValueError as exc:
        raise ValidationError(f"Unsupported frequency: {fields['FREQ']}") from exc
    if fields.get("WKST", "MO") != "MO":
        raise ValidationError("only WKST=MO is supported")

    weekdays = None
    if "BYDAY" in fields:
        try:
            weekdays = [Weekday(day.strip()) for day in fields["BYDAY"].split(",") if day.strip()]
        except ValueError as exc:
            raise ValidationError(f"Invalid BYDAY value: {fields['BYDAY']}") from exc

    rule = RecurrenceRule(
        frequency=frequency,
        interval=_parse_positive_int("INTERVAL", fields.get("INTERVAL", "1")),
        weekdays=weekdays,
        count=_parse_positive_int("COUNT", fields["COUNT"]) if "COUNT" in fields else None,
        until=_parse_until(fields["UNTIL"]) if "UNTIL" in fields else None,
    )
    validate_rule(rule)
    return rule
