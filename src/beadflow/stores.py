"""Store interfaces shared by the local-file and ledger backends.

Services talk to a ``StoreSet`` only. ``create_stores`` is the single place
where the beads mode picks a backend.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, TypedDict, runtime_checkable

from beadflow.fileio import LockOptions
from beadflow.models import (
    BeadsMode,
    FeatureJson,
    PlanComment,
    RunnableTasksResult,
    TaskArtifactKind,
    TaskInfo,
    TaskStatus,
    WorkerSession,
)

if TYPE_CHECKING:
    from beadflow.repository import BeadsRepository


class FeatureExistsError(ValueError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Feature '{name}' already exists")
        self.name = name


class FeatureNotFoundError(LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Feature '{name}' not found")
        self.name = name

    def __str__(self) -> str:
        # LookupError would repr() the message.
        return self.args[0]


class FeatureTransitionError(ValueError):
    """A feature status change that would move backwards or leave ``completed``."""

    def __init__(self, name: str, current: str, target: str, reason: str) -> None:
        super().__init__(f"Cannot move feature '{name}' from {current} to {target}: {reason}")
        self.name = name
        self.current = current
        self.target = target


class TaskNotFoundError(LookupError):
    def __init__(self, folder: str) -> None:
        super().__init__(f"Task '{folder}' not found")
        self.folder = folder

    def __str__(self) -> str:
        return self.args[0]


class BackgroundPatch(TypedDict, total=False):
    """Fields a background worker may update without owning the task."""

    idempotencyKey: str
    workerSession: WorkerSession


@runtime_checkable
class FeatureStore(Protocol):
    def exists(self, name: str) -> bool: ...

    def create(
        self, name: str, ticket: str | None, created_at: str, priority: int
    ) -> FeatureJson: ...

    def get(self, name: str) -> FeatureJson | None: ...

    def list(self) -> list[str]: ...

    def save(self, feature: FeatureJson) -> None: ...

    def complete(self, feature: FeatureJson) -> None: ...


@runtime_checkable
class TaskStore(Protocol):
    def create_task(
        self, feature: str, folder: str, title: str, status: TaskStatus, priority: int
    ) -> TaskStatus: ...

    def get(self, feature: str, folder: str) -> TaskInfo | None: ...

    def get_raw_status(self, feature: str, folder: str) -> TaskStatus | None: ...

    def list(self, feature: str) -> list[TaskInfo]: ...

    def get_next_order(self, feature: str) -> int: ...

    def save(
        self, feature: str, folder: str, status: TaskStatus, sync_status: bool = False
    ) -> None: ...

    def update(
        self,
        feature: str,
        folder: str,
        updater: Callable[[TaskStatus], TaskStatus],
        sync_status: bool = False,
    ) -> TaskStatus:
        """Apply *updater* to the freshly read status while holding the task's lock."""
        ...

    def patch_background(
        self,
        feature: str,
        folder: str,
        patch: BackgroundPatch,
        lock_options: LockOptions | None = None,
    ) -> TaskStatus: ...

    def delete(self, feature: str, folder: str) -> None: ...

    def write_artifact(
        self, feature: str, folder: str, kind: TaskArtifactKind, content: str
    ) -> str: ...

    def read_artifact(self, feature: str, folder: str, kind: TaskArtifactKind) -> str | None: ...

    def write_report(self, feature: str, folder: str, report: str) -> str: ...

    def get_runnable_tasks(self, feature: str) -> RunnableTasksResult | None: ...

    def flush(self) -> None: ...


@runtime_checkable
class PlanStore(Protocol):
    def approve(
        self,
        feature: str,
        content: str,
        plan_hash: str,
        timestamp: str,
        session_id: str | None = None,
    ) -> None: ...

    def is_approved(self, feature: str, current_hash: str) -> bool: ...

    def revoke_approval(self, feature: str, keep_status: bool = False) -> None: ...

    def get_comments(self, feature: str) -> list[PlanComment]: ...

    def set_comments(self, feature: str, comments: list[PlanComment]) -> None: ...

    def sync_plan_description(self, feature: str, content: str) -> None: ...

    def sync_plan_comment(self, feature: str, comment: PlanComment) -> None: ...


class TaskLister(Protocol):
    def list(self, feature: str) -> list[TaskInfo]: ...


@dataclass(frozen=True)
class StoreSet:
    features: FeatureStore
    tasks: TaskStore
    plans: PlanStore


def create_stores(
    project_root: str | Path,
    beads_mode: BeadsMode,
    repository: BeadsRepository | None = None,
    lock_options: LockOptions | None = None,
) -> StoreSet:
    """Build the store set for *beads_mode*.

    The ledger backend needs *repository*; the local-file backend never
    touches the ledger.
    """
    if beads_mode == "on":
        from beadflow.ledger_stores import LedgerFeatureStore, LedgerPlanStore, LedgerTaskStore

        if repository is None:
            raise ValueError("Ledger mode requires a BeadsRepository")
        return StoreSet(
            features=LedgerFeatureStore(project_root, repository),
            tasks=LedgerTaskStore(project_root, repository, lock_options),
            plans=LedgerPlanStore(project_root, repository),
        )

    from beadflow.fs_stores import FileFeatureStore, FilePlanStore, FileTaskStore

    return StoreSet(
        features=FileFeatureStore(project_root, lock_options),
        tasks=FileTaskStore(project_root, lock_options),
        plans=FilePlanStore(project_root, lock_options),
    )
