import re
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.cron import CronTrigger

ALIASES = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * sun",
    "@monthly": "0 0 1 * *",
}

DURATION_UNITS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdwSMHDW])?\s*$")


def parse_duration(value: str | int | float | timedelta | None) -> timedelta | None:
    """Parse ``"7D"``, ``"24h"``, ``"90m"`` or a number of seconds."""
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    # "m" is minutes; months are not a fixed duration.
    multiplier = DURATION_UNITS[(unit or "s").lower()]
    return timedelta(seconds=int(amount) * multiplier)


def format_duration(value: timedelta) -> str:
    seconds = int(value.total_seconds())
    for suffix, size in (("W", 604800), ("D", 86400), ("h", 3600), ("m", 60)):
        if seconds and seconds % size == 0:
            return f"{seconds // size}{suffix}"
    return f"{seconds}s"


def _interval(expression: str) -> timedelta | None:
    if not expression.startswith("@every"):
        return None
    interval = parse_duration(expression[len("@every"):])
    if interval is None or interval.total_seconds() <= 0:
        raise ValueError(f"invalid interval schedule: {expression!r}")
    return interval


def _cron_trigger(expression: str) -> CronTrigger:
    crontab = ALIASES.get(expression, expression)
    return CronTrigger.from_crontab(crontab, timezone="UTC")


def validate_schedule(expression: str) -> str:
    expression = expression.strip()
    if not expression:
        raise ValueError("schedule expression is empty")
    if _interval(expression) is None:
        _cron_trigger(expression)
    return expression


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_run_after(expression: str, now: datetime, anchor: datetime | None = None) -> datetime:
    """First slot strictly after ``now`` (naive UTC in, naive UTC out).

    Slots that were missed while the scheduler was down or a run was still
    going collapse into this single next slot.
    """
    expression = expression.strip()
    interval = _interval(expression)
    if interval is not None:
        anchor = anchor or now
        if now < anchor:
            return anchor
        steps = (now - anchor) // interval + 1
        return anchor + steps * interval

    trigger = _cron_trigger(expression)
    # CronTrigger returns slots >= its start at second resolution.
    start = _as_utc(now).replace(microsecond=0) + timedelta(seconds=1)
    fire_time = trigger.get_next_fire_time(None, start)
    if fire_time is None:
        raise ValueError(f"schedule {expression!r} has no future slots")
    return fire_time.astimezone(timezone.utc).replace(tzinfo=None, microsecond=0)
