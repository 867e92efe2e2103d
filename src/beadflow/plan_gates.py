"""Checks a plan must pass before it is written or approved.

A plan declares the lightweight workflow with a ``Workflow Path: lightweight``
line or a ``## Workflow Path`` / ``## Lightweight Path`` heading. Lightweight
plans are small (one or two tasks) and carry a mini-record naming their
impact, safety, verification and rollback.
"""

from __future__ import annotations

import logging
import re
from typing import Literal

from beadflow.models import WorkflowPath

log = logging.getLogger(__name__)

GatesMode = Literal["enforce", "warn"]
GATES_MODES = ("enforce", "warn")

LIGHTWEIGHT_MAX_TASKS = 2
MINI_RECORD_FIELDS = ("impact", "safety", "verify", "rollback")

_LIGHTWEIGHT_MARKERS = (
    re.compile(r"^workflow\s*path\s*:\s*lightweight\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^##\s+workflow\s+path\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^##\s+lightweight\s+path\s*$", re.IGNORECASE | re.MULTILINE),
)
_TASK_HEADING_RE = re.compile(r"^###\s+\d+\.\s+", re.MULTILINE)
_DISCOVERY_RE = re.compile(r"^##\s+Discovery\s*$", re.IGNORECASE | re.MULTILINE)
_SECTION_RE = re.compile(r"^##\s+", re.MULTILINE)


class PlanGateError(ValueError):
    """Raised when a plan fails a gate that is being enforced."""

    def __init__(self, issues: list[str]) -> None:
        super().__init__("Plan gate failed:\n" + "\n".join(f"- {issue}" for issue in issues))
        self.issues = issues


def detect_workflow_path(content: str) -> WorkflowPath:
    if any(marker.search(content) for marker in _LIGHTWEIGHT_MARKERS):
        return "lightweight"
    return "standard"


def count_plan_tasks(content: str) -> int:
    return len(_TASK_HEADING_RE.findall(content))


def has_mini_record(content: str) -> bool:
    lowered = content.lower()
    return all(name in lowered for name in MINI_RECORD_FIELDS)


def validate_lightweight_plan(content: str) -> list[str]:
    """Problems that keep *content* from qualifying as a lightweight plan."""
    issues = []
    task_count = count_plan_tasks(content)
    if task_count == 0:
        issues.append("No tasks found. Add at least one task (`### 1. Task title`).")
    if task_count > LIGHTWEIGHT_MAX_TASKS:
        issues.append(
            f"Lightweight path supports max {LIGHTWEIGHT_MAX_TASKS} tasks; found {task_count}."
        )
    if not has_mini_record(content):
        issues.append(
            "Lightweight plan must include mini-record details for "
            "Impact, Safety, Verify and Rollback."
        )
    return issues


def validate_discovery_section(content: str) -> list[str]:
    """Problems with the plan's ``## Discovery`` section, if any.

    The section must exist and hold at least 100 characters (40 for a
    lightweight plan) before the next ``##`` heading.
    """
    match = _DISCOVERY_RE.search(content)
    if match is None:
        return [
            "A `## Discovery` section is required: record the questions asked, "
            "research findings and key decisions."
        ]

    rest = content[match.end():]
    next_section = _SECTION_RE.search(rest)
    body = (rest[: next_section.start()] if next_section else rest).strip()

    workflow_path = detect_workflow_path(content)
    minimum = 40 if workflow_path == "lightweight" else 100
    if len(body) < minimum:
        return [f"Discovery section is too thin ({len(body)} chars, minimum {minimum})."]
    if workflow_path == "lightweight" and not has_mini_record(content):
        return ["Lightweight workflow requires a mini-record: Impact, Safety, Verify, Rollback."]
    return []


def apply_gate(issues: list[str], mode: GatesMode, context: str) -> None:
    """Raise ``PlanGateError`` for *issues* when enforcing, otherwise log them."""
    if not issues:
        return
    if mode == "enforce":
        raise PlanGateError(issues)
    for issue in issues:
        log.warning("%s: %s", context, issue)
