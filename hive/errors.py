"""Error taxonomy for the orchestration core.

Each error carries the HTTP status the REST layer maps it to. Managers
raise these; the API layer never inspects messages to pick a status.
"""

from __future__ import annotations

MAX_ERROR_CHARS = 500


def truncate_error(message: object, limit: int = MAX_ERROR_CHARS) -> str:
    """Stringify and clip an error message for storage/display."""
    text = str(message) if message is not None else ""
    return text[:limit]


class HiveError(Exception):
    """Base class for orchestration errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = truncate_error(message)


class ValidationError(HiveError):
    """Malformed input. Never retried."""

    status_code = 400


class NotFoundError(HiveError):
    """Referenced entity does not exist."""

    status_code = 404


class ConflictError(HiveError):
    """Conflicting state: illegal transition, lost optimistic update, busy entity."""

    status_code = 409


class DeadLetterError(ConflictError):
    """Task exhausted its retries and needs a manual reset."""


class UpstreamError(HiveError):
    """Executor/provider failure. Retried by the task retry policy."""

    status_code = 502


class RunCancelledError(HiveError):
    """A session run was cancelled or aborted before it produced a reply."""

    status_code = 409


class ExecutorNotConfiguredError(UpstreamError):
    """No executor backend is configured."""

    status_code = 503
