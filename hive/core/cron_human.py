"""Describe 5-field cron expressions in plain English.

Only patterns that can be described without loss are translated; anything
else is returned unchanged.
"""

from __future__ import annotations

import re

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
MONTH_NAMES = [
    "", "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]

_STEP = re.compile(r"^\*/(\d+)$")
_NUMBER = re.compile(r"^\d+$")
_DOW_LIST = re.compile(r"^[0-6](,[0-6])+$")
_DOW_RANGE = re.compile(r"^([0-6])-([0-6])$")


def format_time(hour: int, minute: int) -> str:
    period = "PM" if hour >= 12 else "AM"
    h = 12 if hour == 0 else hour - 12 if hour > 12 else hour
    return f"{h}:{minute:02d} {period}"


def ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def _describe_dow(field: str) -> str | None:
    normalized = field.replace("7", "0")  # 0 and 7 are both Sunday
    if normalized == "1-5":
        return "Weekdays"
    if normalized in ("0,6", "6,0"):
        return "Weekends"
    if len(normalized) == 1 and normalized in "0123456":
        return f"Every {DAY_NAMES[int(normalized)]}"
    if _DOW_LIST.match(normalized):
        return ", ".join(DAY_NAMES[int(d)] for d in normalized.split(","))
    m = _DOW_RANGE.match(normalized)
    if m:
        return f"{DAY_NAMES[int(m.group(1))]} through {DAY_NAMES[int(m.group(2))]}"
    return None


def cron_to_human(expression: str) -> str:
    """Convert a cron expression to a readable description.

    >>> cron_to_human("0 9 * * 1-5")
    'Weekdays at 9:00 AM'
    >>> cron_to_human("*/15 * * * *")
    'Every 15 minutes'
    """
    raw = expression.strip()
    parts = raw.split()
    if len(parts) != 5:
        return raw
    minute, hour, dom, month, dow = parts
    rest_wild = dom == "*" and month == "*" and dow == "*"

    if raw == "* * * * *":
        return "Every minute"

    step = _STEP.match(minute)
    if step and hour == "*" and rest_wild:
        n = int(step.group(1))
        return "Every minute" if n == 1 else f"Every {n} minutes"

    step = _STEP.match(hour)
    if minute == "0" and step and rest_wild:
        n = int(step.group(1))
        return "Every hour" if n == 1 else f"Every {n} hours"

    if _NUMBER.match(minute) and hour == "*" and rest_wild:
        m = int(minute)
        return "Every hour" if m == 0 else f"Every hour at minute {m}"

    if not (_NUMBER.match(minute) and _NUMBER.match(hour)):
        return raw
    fixed_minute, fixed_hour = int(minute), int(hour)
    if fixed_hour > 23 or fixed_minute > 59:
        return raw
    if fixed_hour == 0 and fixed_minute == 0:
        at_time = "at midnight"
    else:
        at_time = f"at {format_time(fixed_hour, fixed_minute)}"

    if dom == "*" and month == "*" and dow != "*":
        described = _describe_dow(dow)
        return f"{described} {at_time}" if described else raw

    if _NUMBER.match(dom) and month == "*" and dow == "*":
        return f"{ordinal(int(dom))} of every month {at_time}"

    if _NUMBER.match(dom) and _NUMBER.match(month) and dow == "*":
        mo = int(month)
        if 1 <= mo <= 12:
            return f"{MONTH_NAMES[mo]} {ordinal(int(dom))} {at_time}"

    if rest_wild:
        return f"Every day {at_time}"

    return raw
