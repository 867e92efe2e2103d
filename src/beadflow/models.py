"""Record shapes shared by stores, services and the CLI.

Keys are camelCase because these dicts are written verbatim to
``feature.json`` / ``status.json`` and into ledger artifacts.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal, TypedDict

BeadsMode = Literal["on", "off"]
FeatureStatus = Literal["planning", "approved", "executing", "completed"]
WorkflowPath = Literal["standard", "lightweight"]
TaskStatusValue = Literal[
    "pending", "in_progress", "done", "cancelled", "blocked", "failed", "partial"
]
TaskOrigin = Literal["plan", "manual"]
TaskArtifactKind = Literal["spec", "worker_prompt", "report"]

VALID_BEADS_MODES = frozenset({"on", "off"})
VALID_FEATURE_STATUSES = frozenset({"planning", "approved", "executing", "completed"})
FEATURE_STATUS_ORDER: dict[str, int] = {"planning": 0, "approved": 1, "executing": 2, "completed": 3}
VALID_TASK_STATUSES = frozenset(
    {"pending", "in_progress", "done", "cancelled", "blocked", "failed", "partial"}
)
VALID_TASK_ORIGINS = frozenset({"plan", "manual"})
TASK_ARTIFACT_KINDS = ("spec", "worker_prompt", "report")

TASK_STATUS_SCHEMA_VERSION = 1
DEFAULT_PRIORITY = 3


class _FeatureJsonRequired(TypedDict):
    name: str
    epicBeadId: str
    status: FeatureStatus
    createdAt: str


class FeatureJson(_FeatureJsonRequired, total=False):
    workflowPath: WorkflowPath
    ticket: str
    sessionId: str
    approvedAt: str
    completedAt: str
    planApprovalHash: str
    planComments: list[PlanComment]


class WorkerSession(TypedDict, total=False):
    sessionId: str
    taskId: str
    workerId: str
    agent: str
    mode: Literal["inline", "delegate"]
    lastHeartbeatAt: str
    attempt: int
    messageCount: int


class _TaskBlockerRequired(TypedDict):
    reason: str


class TaskBlocker(_TaskBlockerRequired, total=False):
    detail: str


class _TaskStatusRequired(TypedDict):
    status: TaskStatusValue
    origin: TaskOrigin


class TaskStatus(_TaskStatusRequired, total=False):
    schemaVersion: int
    planTitle: str
    summary: str
    startedAt: str
    completedAt: str
    baseCommit: str
    idempotencyKey: str
    workerSession: WorkerSession
    beadId: str
    dependsOn: list[str]
    blocker: TaskBlocker
    folder: str


class _TaskInfoRequired(TypedDict):
    folder: str
    name: str
    status: TaskStatusValue
    origin: TaskOrigin


class TaskInfo(_TaskInfoRequired, total=False):
    beadId: str
    planTitle: str
    summary: str


class PlanComment(TypedDict):
    id: str
    line: int
    body: str
    author: str
    timestamp: str


class PlanReadResult(TypedDict):
    content: str
    status: FeatureStatus
    comments: list[PlanComment]


class FeatureInfo(TypedDict):
    name: str
    status: FeatureStatus
    tasks: list[TaskInfo]
    hasPlan: bool
    commentCount: int


class TasksSyncResult(TypedDict):
    created: list[str]
    removed: list[str]
    kept: list[str]
    manual: list[str]


class _RunnableTaskRequired(TypedDict):
    folder: str
    name: str
    status: TaskStatusValue


class RunnableTask(_RunnableTaskRequired, total=False):
    beadId: str


class RunnableTasksResult(TypedDict):
    runnable: list[RunnableTask]
    blocked: list[RunnableTask]
    completed: list[RunnableTask]
    inProgress: list[RunnableTask]
    source: Literal["beads", "filesystem"]


class LedgerIssue(TypedDict, total=False):
    id: str
    title: str
    status: str
    type: str


def validate_priority(priority: object) -> int:
    """Return *priority* if it is an integer in 1..5, else raise ValueError."""
    if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 5:
        raise ValueError(
            f"Priority must be an integer between 1 and 5 (inclusive), got: {priority}"
        )
    return priority


def advance_feature_status(current: str | None, target: FeatureStatus) -> FeatureStatus:
    """The later of *current* and *target*; feature status never moves back here."""
    order = FEATURE_STATUS_ORDER
    if current in order and order[current] > order[target]:
        return current  # type: ignore[return-value]
    return target


def without_plan_approval(feature: Mapping[str, Any], keep_status: bool = False) -> dict[str, Any]:
    """Copy of *feature* with its plan approval removed.

    An ``approved`` feature falls back to ``planning`` unless *keep_status*.
    """
    updated = {key: value for key, value in feature.items() if key != "planApprovalHash"}
    if feature.get("status") == "approved" and not keep_status:
        updated["status"] = "planning"
        updated.pop("approvedAt", None)
    return updated
