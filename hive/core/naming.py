"""Human-friendly schedule names.

A caller-provided name wins unless it is one of the placeholder names the
UI submits by default; otherwise the name is derived from the task prompt.
"""

from __future__ import annotations

import re

from hive.utils import normalize_whitespace

MAX_SCHEDULE_NAME_LENGTH = 80
FALLBACK_NAME = "Scheduled Task"

_GENERIC_NAMES = {"", "schedule", "new schedule", "unnamed schedule"}

# Ordered: first matching rule wins.
_KEYWORD_NAMES: list[tuple[tuple[str, ...], str]] = [
    (("health check", "heartbeat"), "Health Check"),
    (("report",), "Report Task"),
]

_POLITE_PREFIX = re.compile(r"^(please\s+)?(can you|could you|would you)\s+", re.IGNORECASE)
_VERB_PREFIX = re.compile(
    r"^(create|make|set up|setup|schedule|run|execute|trigger|perform|generate|send|take"
    r"|capture|navigate|go|open|check|monitor|fetch|pull|build|test)\b\s*",
    re.IGNORECASE,
)
_TO_PREFIX = re.compile(r"^to\s+", re.IGNORECASE)
_CLAUSE_SPLIT = re.compile(r"[.,;:!?]")


def truncate_name(value: str, max_length: int = MAX_SCHEDULE_NAME_LENGTH) -> str:
    if len(value) <= max_length:
        return value
    return value[: max(0, max_length - 3)].rstrip() + "..."


def is_generic_name(name: str | None) -> bool:
    return normalize_whitespace(name).lower() in _GENERIC_NAMES


def derive_name_from_prompt(task_prompt: str | None) -> str:
    # Split lines before collapsing whitespace so only the first line is used.
    first_line = (task_prompt or "").strip().split("\n")[0]
    prompt = normalize_whitespace(task_prompt)
    if not prompt:
        return FALLBACK_NAME

    lower = prompt.lower()
    if "wikipedia" in lower and ("screenshot" in lower or "screen shot" in lower):
        return "Wikipedia Screenshot"
    if "screenshot" in lower:
        return "Screenshot Task"
    if "backup" in lower:
        return "Backup Task"
    for keywords, name in _KEYWORD_NAMES:
        if any(k in lower for k in keywords):
            return name

    first_clause = _CLAUSE_SPLIT.split(normalize_whitespace(first_line) or prompt)[0]
    cleaned = _POLITE_PREFIX.sub("", first_clause)
    cleaned = _VERB_PREFIX.sub("", cleaned)
    cleaned = normalize_whitespace(_TO_PREFIX.sub("", cleaned))
    if not cleaned:
        return FALLBACK_NAME
    return cleaned[0].upper() + cleaned[1:]


def resolve_schedule_name(name: str | None, task_prompt: str | None) -> str:
    """Return the display name for a schedule.

    >>> resolve_schedule_name("", "Take a screenshot of Wikipedia's homepage")
    'Wikipedia Screenshot'
    >>> resolve_schedule_name("Nightly sync", "run the sync")
    'Nightly sync'
    """
    provided = normalize_whitespace(name) if isinstance(name, str) else ""
    if provided and not is_generic_name(provided):
        return truncate_name(provided)
    return truncate_name(derive_name_from_prompt(task_prompt if isinstance(task_prompt, str) else ""))
