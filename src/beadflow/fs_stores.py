"""Local-file backend: canonical state under ``docs/`` when the ledger is off."""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from beadflow.fileio import (
    LockOptions,
    acquire_lock,
    ensure_dir,
    patch_json_locked,
    read_json,
    read_text,
    update_json_locked,
    write_json_atomic,
    write_json_locked,
    write_text,
)
from beadflow.models import (
    TASK_STATUS_SCHEMA_VERSION,
    FeatureJson,
    PlanComment,
    RunnableTasksResult,
    TaskArtifactKind,
    TaskInfo,
    TaskStatus,
    advance_feature_status,
    without_plan_approval,
)
from beadflow.paths import (
    context_path,
    feature_json_path,
    feature_path,
    folder_display_name,
    folder_order,
    list_feature_directories,
    task_path,
    task_report_path,
    task_spec_path,
    task_status_path,
    task_worker_prompt_path,
    tasks_path,
)
from beadflow.stores import BackgroundPatch, FeatureExistsError, TaskNotFoundError

log = logging.getLogger(__name__)


def local_id() -> str:
    return f"local-{time.time_ns() // 1_000_000}-{uuid.uuid4().hex[:8]}"


def task_info(folder: str, status: TaskStatus) -> TaskInfo:
    info: dict[str, Any] = {
        "folder": folder,
        "name": folder_display_name(folder),
        "status": status.get("status", "pending"),
        "origin": status.get("origin", "plan"),
    }
    for key in ("beadId", "planTitle", "summary"):
        if status.get(key) is not None:
            info[key] = status[key]
    return info  # type: ignore[return-value]


class FileFeatureStore:
    def __init__(self, project_root: str | Path, lock_options: LockOptions | None = None) -> None:
        self.project_root = Path(project_root)
        self.lock_options = lock_options

    def exists(self, name: str) -> bool:
        return feature_path(self.project_root, name, "off").exists()

    def create(
        self, name: str, ticket: str | None, created_at: str, priority: int
    ) -> FeatureJson:
        directory = feature_path(self.project_root, name, "off")
        json_path = feature_json_path(self.project_root, name, "off")
        ensure_dir(directory.parent)

        release = acquire_lock(f"{directory}.create", self.lock_options)
        try:
            if json_path.exists():
                raise FeatureExistsError(name)
            feature: FeatureJson = {
                "name": name,
                "epicBeadId": local_id(),
                "status": "planning",
                "createdAt": created_at,
            }
            if ticket:
                feature["ticket"] = ticket
            try:
                ensure_dir(context_path(self.project_root, name, "off"))
                ensure_dir(tasks_path(self.project_root, name, "off"))
                write_json_atomic(json_path, feature)
            except OSError as e:
                shutil.rmtree(directory, ignore_errors=True)
                raise RuntimeError(f"Failed to initialize feature '{name}': {e}") from e
        finally:
            release()
        log.info("Created feature %s", name)
        return feature

    def get(self, name: str) -> FeatureJson | None:
        return read_json(feature_json_path(self.project_root, name, "off"))

    def list(self) -> list[str]:
        return sorted(list_feature_directories(self.project_root, "off"))

    def save(self, feature: FeatureJson) -> None:
        write_json_locked(
            feature_json_path(self.project_root, feature["name"], "off"), feature, self.lock_options
        )

    def complete(self, feature: FeatureJson) -> None:
        self.save(feature)


class FileTaskStore:
    def __init__(self, project_root: str | Path, lock_options: LockOptions | None = None) -> None:
        self.project_root = Path(project_root)
        self.lock_options = lock_options

    def _folders(self, feature: str) -> list[str]:
        directory = tasks_path(self.project_root, feature, "off")
        if not directory.is_dir():
            return []
        return sorted(entry.name for entry in directory.iterdir() if entry.is_dir())

    def create_task(
        self, feature: str, folder: str, title: str, status: TaskStatus, priority: int
    ) -> TaskStatus:
        created: TaskStatus = {**status, "beadId": status.get("beadId") or local_id()}
        ensure_dir(task_path(self.project_root, feature, folder))
        write_json_locked(
            task_status_path(self.project_root, feature, folder), created, self.lock_options
        )
        return created

    def get(self, feature: str, folder: str) -> TaskInfo | None:
        status = self.get_raw_status(feature, folder)
        return task_info(folder, status) if status else None

    def get_raw_status(self, feature: str, folder: str) -> TaskStatus | None:
        return read_json(task_status_path(self.project_root, feature, folder))

    def list(self, feature: str) -> list[TaskInfo]:
        tasks = []
        for folder in self._folders(feature):
            info = self.get(feature, folder)
            if info is not None:
                tasks.append(info)
        return tasks

    def get_next_order(self, feature: str) -> int:
        orders = [o for o in map(folder_order, self._folders(feature)) if o is not None]
        return max(orders, default=0) + 1

    def save(
        self, feature: str, folder: str, status: TaskStatus, sync_status: bool = False
    ) -> None:
        write_json_locked(
            task_status_path(self.project_root, feature, folder), status, self.lock_options
        )

    def update(
        self,
        feature: str,
        folder: str,
        updater: Callable[[TaskStatus], TaskStatus],
        sync_status: bool = False,
    ) -> TaskStatus:
        path = task_status_path(self.project_root, feature, folder)
        if not path.exists():
            raise TaskNotFoundError(folder)

        def _apply(current: TaskStatus) -> TaskStatus:
            # Deleted while we waited for the lock.
            if not current:
                raise TaskNotFoundError(folder)
            return updater(current)

        return update_json_locked(path, _apply, {}, self.lock_options)  # type: ignore[arg-type]

    def patch_background(
        self,
        feature: str,
        folder: str,
        patch: BackgroundPatch,
        lock_options: LockOptions | None = None,
    ) -> TaskStatus:
        safe: dict[str, Any] = {"schemaVersion": TASK_STATUS_SCHEMA_VERSION}
        if "idempotencyKey" in patch:
            safe["idempotencyKey"] = patch["idempotencyKey"]
        if "workerSession" in patch:
            safe["workerSession"] = patch["workerSession"]
        return patch_json_locked(  # type: ignore[return-value]
            task_status_path(self.project_root, feature, folder),
            safe,
            lock_options or self.lock_options,
        )

    def delete(self, feature: str, folder: str) -> None:
        shutil.rmtree(task_path(self.project_root, feature, folder), ignore_errors=True)

    def _artifact_path(self, feature: str, folder: str, kind: TaskArtifactKind) -> Path:
        if kind == "spec":
            return task_spec_path(self.project_root, feature, folder)
        if kind == "worker_prompt":
            return task_worker_prompt_path(self.project_root, feature, folder)
        if kind == "report":
            return task_report_path(self.project_root, feature, folder)
        raise ValueError(f"Unknown task artifact kind: {kind}")

    def write_artifact(
        self, feature: str, folder: str, kind: TaskArtifactKind, content: str
    ) -> str:
        path = self._artifact_path(feature, folder, kind)
        write_text(path, content)
        return str(path)

    def read_artifact(self, feature: str, folder: str, kind: TaskArtifactKind) -> str | None:
        return read_text(self._artifact_path(feature, folder, kind))

    def write_report(self, feature: str, folder: str, report: str) -> str:
        return self.write_artifact(feature, folder, "report", report)

    def get_runnable_tasks(self, feature: str) -> RunnableTasksResult | None:
        return None

    def flush(self) -> None:
        pass


_APPROVED_STATUSES = frozenset({"approved", "executing", "completed"})


class FilePlanStore:
    """Plan approval and comments kept inside ``feature.json``."""

    def __init__(self, project_root: str | Path, lock_options: LockOptions | None = None) -> None:
        self.project_root = Path(project_root)
        self.lock_options = lock_options

    def _feature_json(self, feature: str) -> Path:
        return feature_json_path(self.project_root, feature, "off")

    def approve(
        self,
        feature: str,
        content: str,
        plan_hash: str,
        timestamp: str,
        session_id: str | None = None,
    ) -> None:
        update_json_locked(
            self._feature_json(feature),
            lambda current: {
                **current,
                "status": advance_feature_status(current.get("status"), "approved"),
                "approvedAt": timestamp,
                "planApprovalHash": plan_hash,
            },
            {},
            self.lock_options,
        )

    def is_approved(self, feature: str, current_hash: str) -> bool:
        data = read_json(self._feature_json(feature))
        if not data or data.get("status") not in _APPROVED_STATUSES:
            return False
        return data.get("planApprovalHash") == current_hash

    def revoke_approval(self, feature: str, keep_status: bool = False) -> None:
        path = self._feature_json(feature)
        if not path.exists():
            return
        update_json_locked(
            path,
            lambda current: without_plan_approval(current, keep_status),
            {},
            self.lock_options,
        )

    def get_comments(self, feature: str) -> list[PlanComment]:
        data = read_json(self._feature_json(feature))
        return (data or {}).get("planComments") or []

    def set_comments(self, feature: str, comments: list[PlanComment]) -> None:
        path = self._feature_json(feature)
        if not path.exists():
            return
        update_json_locked(
            path,
            lambda current: {**current, "planComments": comments},
            {},
            self.lock_options,
        )

    def sync_plan_description(self, feature: str, content: str) -> None:
        pass

    def sync_plan_comment(self, feature: str, comment: PlanComment) -> None:
        pass
