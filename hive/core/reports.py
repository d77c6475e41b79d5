"""Markdown completion reports for tasks.

Each task that reaches a terminal transition gets ``<reports_dir>/<id>.md``
summarising what the agent reported plus evidence lines pulled out of the
result text (files touched, commands run, verification output). The file
is rewritten only when its content changes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MAX_REPORT_BODY = 6000
MAX_EVIDENCE_LINES = 8

_COMMAND_HINT = re.compile(
    r"\b(npm|pnpm|yarn|bun|node|npx|pytest|vitest|jest|playwright|go test|cargo test"
    r"|deno test|python|pip|uv|docker|git)\b",
    re.IGNORECASE,
)
_FILE_HINT = re.compile(
    r"\b([\w./-]+\.(ts|tsx|js|jsx|mjs|cjs|json|md|css|scss|html|yml|yaml|sh|py|go|rs"
    r"|java|kt|swift|rb|php|sql))\b",
    re.IGNORECASE,
)
_VERIFICATION_HINT = re.compile(
    r"\b(test|tests|passed|failed|failing|lint|typecheck|build|verified|verification)\b",
    re.IGNORECASE,
)
_BULLET = re.compile(r"^[-*]\s+")
_WS = re.compile(r"\s+")


@dataclass
class TaskReportEvidence:
    changed_files: list[str] = field(default_factory=list)
    commands_run: list[str] = field(default_factory=list)
    verification: list[str] = field(default_factory=list)

    @property
    def has_evidence(self) -> bool:
        return bool(self.changed_files or self.commands_run or self.verification)


@dataclass
class TaskReport:
    path: Path
    relative_path: str
    evidence: TaskReportEvidence


def _lines(value: str) -> list[str]:
    out = []
    for raw in value.splitlines():
        line = _WS.sub(" ", _BULLET.sub("", raw.strip())).strip()
        if line:
            out.append(line)
    return out


def _unique_top(values: list[str], limit: int = MAX_EVIDENCE_LINES) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for value in values:
        key = value.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(value)
        if len(out) >= limit:
            break
    return out


def extract_evidence(result: str | None) -> TaskReportEvidence:
    lines = _lines(result or "")
    return TaskReportEvidence(
        changed_files=_unique_top([ln for ln in lines if _FILE_HINT.search(ln)]),
        commands_run=_unique_top([ln for ln in lines if _COMMAND_HINT.search(ln)]),
        verification=_unique_top([ln for ln in lines if _VERIFICATION_HINT.search(ln)]),
    )


def _section(title: str, values: list[str]) -> list[str]:
    if not values:
        return [f"## {title}", "- Not provided", ""]
    return [f"## {title}", *(f"- {v}" for v in values), ""]


def render_report(task: Any, evidence: TaskReportEvidence) -> str:
    title = (getattr(task, "title", None) or "").strip() or "Untitled Task"
    description = (getattr(task, "description", None) or "").strip()
    result = (getattr(task, "result", None) or "").strip()

    lines = [
        f"# Task {task.id}: {title}",
        "",
        f"- Status: {getattr(task, 'status', None) or 'unknown'}",
        f"- Agent: {getattr(task, 'agent_id', None) or 'unassigned'}",
        f"- Session: {getattr(task, 'session_id', None) or 'none'}",
        "",
    ]
    if description:
        lines += ["## Description", description, ""]
    lines += ["## Result Summary", result[:MAX_REPORT_BODY] if result else "No result summary provided.", ""]
    lines += _section("Changed Files", evidence.changed_files)
    lines += _section("Commands Run", evidence.commands_run)
    lines += _section("Verification", evidence.verification)
    return "\n".join(lines).strip() + "\n"


def ensure_task_completion_report(task: Any, reports_dir: str | Path) -> TaskReport | None:
    """Write (or refresh) the task's report and return its location and evidence.

    Returns None for tasks without an id. Filesystem errors propagate.
    """
    task_id = (getattr(task, "id", None) or "").strip()
    if not task_id:
        return None

    evidence = extract_evidence(getattr(task, "result", None))
    content = render_report(task, evidence)

    directory = Path(reports_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{task_id}.md"
    current = path.read_text(encoding="utf-8") if path.exists() else None
    if current != content:
        path.write_text(content, encoding="utf-8")
        logger.debug("Wrote completion report %s", path)

    # Stored on the task relative to reports_dir, independent of the cwd.
    return TaskReport(path=path, relative_path=path.name, evidence=evidence)
