"""Translation between ledger statuses and beadflow statuses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from beadflow.models import FeatureStatus, TaskStatusValue

_TASK_STATUS_BY_LEDGER: dict[str, TaskStatusValue] = {
    "closed": "done",
    "tombstone": "done",
    "in_progress": "in_progress",
    "review": "in_progress",
    "hooked": "in_progress",
    "blocked": "blocked",
    "deferred": "blocked",
    "open": "pending",
    "pinned": "pending",
}

_FEATURE_STATUS_BY_LEDGER: dict[str, FeatureStatus] = {
    "closed": "completed",
    "tombstone": "completed",
    "in_progress": "executing",
    "blocked": "executing",
    "deferred": "executing",
    "pinned": "executing",
    "hooked": "executing",
    "review": "executing",
    "open": "planning",
}


def ledger_status_to_task_status(ledger_status: str | None) -> TaskStatusValue:
    if not ledger_status:
        return "pending"
    return _TASK_STATUS_BY_LEDGER.get(ledger_status.lower(), "pending")


def ledger_status_to_feature_status(ledger_status: str | None) -> FeatureStatus:
    if not ledger_status:
        return "planning"
    return _FEATURE_STATUS_BY_LEDGER.get(ledger_status.lower(), "planning")


@dataclass(frozen=True)
class TaskLedgerAction:
    """One ledger mutation needed to mirror a task status."""

    type: Literal["close", "claim", "unclaim", "defer"]
    label: str | None = None


def task_ledger_actions(status: str) -> list[TaskLedgerAction]:
    if status == "done":
        return [TaskLedgerAction("close")]
    if status == "in_progress":
        return [TaskLedgerAction("claim")]
    if status in ("blocked", "failed", "partial", "cancelled"):
        return [TaskLedgerAction("defer", label=status)]
    if status == "pending":
        return [TaskLedgerAction("unclaim")]
    return []
