"""Completion gate for tasks.

``validate_task_completion`` decides whether a task's reported result is
real evidence of finished work. A task is only allowed into ``completed``
when this returns ok; the task queue demotes it to ``failed`` otherwise.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from hive.core.reports import TaskReport
from hive.core.schemas import GoalContract, TaskValidation
from hive.utils import normalize_whitespace, utcnow

MIN_RESULT_CHARS = 40

WEAK_RESULT_PATTERNS = [
    re.compile(r"what can i help you with", re.IGNORECASE),
    re.compile(r"waiting for approval", re.IGNORECASE),
    re.compile(r"now let me write", re.IGNORECASE),
    re.compile(r"what'?s the play", re.IGNORECASE),
    re.compile(r"\bthe plan covers\b", re.IGNORECASE),
    re.compile(r"now update the agent", re.IGNORECASE),
    re.compile(r"\bzero typescript errors\b", re.IGNORECASE),
]

_IMPLEMENTATION_HINT = re.compile(
    r"\b(add|build|create|fix|implement|integrat|refactor|update|write)\b", re.IGNORECASE
)
_EXECUTION_EVIDENCE = re.compile(
    r"\b(changed|updated|added|modified|files?|commands?|tests?|build|lint|typecheck|verified|report)\b",
    re.IGNORECASE,
)
_SCREENSHOT_HINT = re.compile(r"\b(screenshot|screen shot|snapshot|capture)\b", re.IGNORECASE)
_DELIVERY_HINT = re.compile(r"\b(send|deliver|return|share|upload|post|message)\b", re.IGNORECASE)
_SCREENSHOT_ARTIFACT = re.compile(
    r"(?:sandbox:)?/api/uploads/[^\s)\]]+|https?://[^\s)\]]+\.(?:png|jpe?g|webp|gif|pdf)\b",
    re.IGNORECASE,
)
_SENT_SCREENSHOT = re.compile(
    r"\b(sent|shared|uploaded|returned)\b[^.]*\b(screenshot|snapshot|image)\b", re.IGNORECASE
)


def _goal_contract(task: Any) -> GoalContract | None:
    raw = getattr(task, "goal_contract", None)
    if raw is None:
        return None
    if isinstance(raw, GoalContract):
        return raw
    return GoalContract.model_validate(raw)


def _check_goal_contract(
    contract: GoalContract,
    completed_at: datetime,
    has_evidence: bool,
) -> list[str]:
    reasons = []
    if contract.deadline_at is not None and completed_at > contract.deadline_at:
        reasons.append(
            f"Goal deadline {contract.deadline_at.isoformat()} passed before completion."
        )
    if contract.success_metric and not has_evidence:
        reasons.append(
            f"Success metric \"{contract.success_metric}\" has no supporting evidence in result or report."
        )
    return reasons


def validate_task_completion(task: Any, report: TaskReport | None = None) -> TaskValidation:
    """Check a task's result (and optional report evidence) for genuine completion."""
    reasons: list[str] = []
    title = normalize_whitespace(getattr(task, "title", None))
    description = normalize_whitespace(getattr(task, "description", None))
    result = normalize_whitespace(getattr(task, "result", None))
    error = normalize_whitespace(getattr(task, "error", None))

    if error:
        reasons.append("Task has a non-empty error field.")

    if not result:
        reasons.append("Result summary is empty.")
    else:
        if len(result) < MIN_RESULT_CHARS:
            reasons.append(f"Result summary is too short ({len(result)} chars).")
        if any(rx.search(result) for rx in WEAK_RESULT_PATTERNS):
            reasons.append("Result contains placeholder/planning language instead of completion evidence.")

    has_result_evidence = bool(_EXECUTION_EVIDENCE.search(result))
    has_report_evidence = report is not None and report.evidence.has_evidence

    implementation_task = bool(_IMPLEMENTATION_HINT.search(title) or _IMPLEMENTATION_HINT.search(description))
    if implementation_task and not has_result_evidence and not has_report_evidence:
        if report is not None and report.relative_path:
            reasons.append(
                f"Implementation task is missing concrete execution evidence in result or {report.relative_path}."
            )
        else:
            reasons.append("Implementation task is missing concrete execution evidence in result.")

    screenshot_task = bool(_SCREENSHOT_HINT.search(title) or _SCREENSHOT_HINT.search(description))
    delivery_task = bool(_DELIVERY_HINT.search(title) or _DELIVERY_HINT.search(description))
    if screenshot_task and delivery_task:
        if not (_SCREENSHOT_ARTIFACT.search(result) or _SENT_SCREENSHOT.search(result)):
            reasons.append(
                "Screenshot delivery task is missing artifact evidence "
                "(upload link or explicit sent screenshot confirmation)."
            )

    now = utcnow()
    contract = _goal_contract(task)
    if contract is not None:
        completed_at = getattr(task, "completed_at", None) or now
        reasons.extend(_check_goal_contract(contract, completed_at, has_result_evidence or has_report_evidence))

    return TaskValidation(ok=not reasons, reasons=reasons, checked_at=now)


def format_validation_failure(reasons: list[str]) -> str:
    return f"Completion validation failed: {' '.join(reasons)}"
