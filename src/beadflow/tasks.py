"""Task lifecycle: plan sync, manual tasks, status updates and scheduling views."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from beadflow.fileio import LockOptions, now_iso, read_text
from beadflow.graph import (
    GraphTask,
    PlanTask,
    parse_plan_tasks,
    partition_tasks,
    resolve_dependencies,
    validate_dependency_graph,
    validate_unique_prefixes,
)
from beadflow.models import (
    DEFAULT_PRIORITY,
    TASK_STATUS_SCHEMA_VERSION,
    VALID_TASK_STATUSES,
    BeadsMode,
    RunnableTask,
    RunnableTasksResult,
    TaskArtifactKind,
    TaskInfo,
    TaskStatus,
    TasksSyncResult,
    validate_priority,
)
from beadflow.paths import context_path, derive_task_folder, plan_path, sanitize_name
from beadflow.spec_format import CompletedTask, ContextFile, SpecData, SpecTask, format_spec_content
from beadflow.stores import BackgroundPatch, TaskStore

log = logging.getLogger(__name__)

# Fields owned by the completion flow. Background workers go through
# patch_background_fields instead.
UPDATABLE_FIELDS = frozenset({"status", "summary", "baseCommit", "blocker"})


def extract_plan_section(plan_content: str | None, name: str, order: int) -> str | None:
    """The ``### N. Name`` section of the plan, matched by title then by number."""
    if not plan_content:
        return None
    match = re.search(
        rf"###\s*\d+\.\s*{re.escape(name)}[\s\S]*?(?=###|$)", plan_content, re.IGNORECASE
    )
    if not match and order > 0:
        match = re.search(rf"###\s*{order}\.\s*[^\n]+[\s\S]*?(?=###|$)", plan_content, re.IGNORECASE)
    return match.group(0).strip() if match else None


class TaskService:
    def __init__(self, project_root: str | Path, store: TaskStore, beads_mode: BeadsMode = "on"):
        self.project_root = Path(project_root)
        self.store = store
        self.beads_mode = beads_mode

    # -- plan sync --

    def sync(self, feature: str) -> TasksSyncResult:
        """Reconcile the task set with plan.md.

        Manual tasks are never touched. Done and in-progress tasks are kept,
        cancelled tasks and tasks dropped from the plan are deleted, and new
        plan tasks are created pending with their dependencies resolved.
        """
        plan_content = read_text(plan_path(self.project_root, feature, self.beads_mode))
        if not plan_content:
            raise ValueError(f"No plan.md found for feature '{feature}'")

        plan_tasks = parse_plan_tasks(plan_content)
        validate_dependency_graph(plan_tasks)

        existing = self.store.list(feature)
        planned = {t.folder for t in plan_tasks}
        result: TasksSyncResult = {"created": [], "removed": [], "kept": [], "manual": []}

        for task in existing:
            folder = task["folder"]
            if task["origin"] == "manual":
                result["manual"].append(folder)
            elif task["status"] in ("done", "in_progress"):
                result["kept"].append(folder)
            elif task["status"] == "cancelled" or folder not in planned:
                self.store.delete(feature, folder)
                result["removed"].append(folder)
            else:
                result["kept"].append(folder)

        existing_folders = {t["folder"] for t in existing}
        context_files = self._context_files(feature)
        completed_tasks = [
            CompletedTask(name=t["name"], summary=t["summary"])
            for t in existing
            if t["status"] == "done" and t.get("summary")
        ]
        for plan_task in plan_tasks:
            if plan_task.folder in existing_folders:
                continue
            depends_on = resolve_dependencies(plan_task, plan_tasks)
            status: TaskStatus = {
                "status": "pending",
                "origin": "plan",
                "planTitle": plan_task.name,
                "dependsOn": depends_on,
            }
            self.store.create_task(
                feature, plan_task.folder, plan_task.name, status, DEFAULT_PRIORITY
            )
            spec = self.build_spec_data(
                feature,
                plan_task,
                depends_on,
                plan_tasks,
                plan_content,
                context_files=context_files,
                completed_tasks=completed_tasks,
            )
            self.store.write_artifact(
                feature, plan_task.folder, "spec", format_spec_content(spec)
            )
            result["created"].append(plan_task.folder)

        self.store.flush()
        log.info(
            "Synced tasks for %s: %d created, %d removed, %d kept, %d manual",
            feature,
            len(result["created"]),
            len(result["removed"]),
            len(result["kept"]),
            len(result["manual"]),
        )
        return result

    def _context_files(self, feature: str) -> list[ContextFile]:
        directory = context_path(self.project_root, feature, self.beads_mode)
        if not directory.is_dir():
            return []
        return [
            ContextFile(name=path.stem, content=path.read_text(encoding="utf-8"))
            for path in sorted(directory.glob("*.md"))
        ]

    def build_spec_data(
        self,
        feature: str,
        task: PlanTask,
        depends_on: list[str],
        all_tasks: Sequence[PlanTask],
        plan_content: str | None = None,
        context_files: list[ContextFile] | None = None,
        completed_tasks: list[CompletedTask] | None = None,
    ) -> SpecData:
        return SpecData(
            feature_name=feature,
            task=SpecTask(folder=task.folder, name=task.name, order=task.order),
            depends_on=depends_on,
            all_tasks=[SpecTask(folder=t.folder, name=t.name, order=t.order) for t in all_tasks],
            plan_section=extract_plan_section(plan_content, task.name, task.order),
            context_files=context_files or [],
            completed_tasks=completed_tasks or [],
        )

    # -- manual tasks --

    def create(
        self,
        feature: str,
        name: str,
        order: int | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        """Create a manual task and return its folder."""
        name = sanitize_name(name)
        validate_priority(priority)
        folder = derive_task_folder(order or self.store.get_next_order(feature), name)
        existing = [task["folder"] for task in self.store.list(feature)]
        collisions = validate_unique_prefixes([*existing, folder])
        if collisions:
            raise ValueError("; ".join(collisions))
        status: TaskStatus = {"status": "pending", "origin": "manual", "planTitle": name}
        self.store.create_task(feature, folder, name, status, priority)
        return folder

    # -- updates --

    def update(self, feature: str, folder: str, updates: Mapping[str, Any]) -> TaskStatus:
        """Apply completion-owned *updates* to the task's current status.

        The record is re-read under the task's lock, so worker fields patched
        in the meantime are kept.
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
        if "status" in updates and updates["status"] not in VALID_TASK_STATUSES:
            raise ValueError(f"Invalid task status: {updates['status']}")
        status = updates.get("status")

        def _apply(current: TaskStatus) -> TaskStatus:
            updated: dict[str, Any] = {
                **current,
                **updates,
                "schemaVersion": TASK_STATUS_SCHEMA_VERSION,
            }
            if status == "in_progress" and not current.get("startedAt"):
                updated["startedAt"] = now_iso()
            if status == "done" and not current.get("completedAt"):
                updated["completedAt"] = now_iso()
            return updated  # type: ignore[return-value]

        return self.store.update(feature, folder, _apply, sync_status=status is not None)

    def patch_background_fields(
        self,
        feature: str,
        folder: str,
        patch: BackgroundPatch,
        lock_options: LockOptions | None = None,
    ) -> TaskStatus:
        """Update worker-owned fields only; completion-owned fields are preserved."""
        return self.store.patch_background(feature, folder, patch, lock_options)

    # -- reads --

    def get(self, feature: str, folder: str) -> TaskInfo | None:
        return self.store.get(feature, folder)

    def get_raw_status(self, feature: str, folder: str) -> TaskStatus | None:
        return self.store.get_raw_status(feature, folder)

    def list(self, feature: str) -> list[TaskInfo]:
        return self.store.list(feature)

    # -- artifacts --

    def write_spec(self, feature: str, folder: str, content: str) -> str:
        return self.store.write_artifact(feature, folder, "spec", content)

    def write_worker_prompt(self, feature: str, folder: str, content: str) -> str:
        return self.store.write_artifact(feature, folder, "worker_prompt", content)

    def write_report(self, feature: str, folder: str, report: str) -> str:
        return self.store.write_report(feature, folder, report)

    def read_task_artifact(self, feature: str, folder: str, kind: TaskArtifactKind) -> str | None:
        return self.store.read_artifact(feature, folder, kind)

    # -- scheduling --

    def get_runnable_tasks(self, feature: str) -> RunnableTasksResult:
        from_store = self.store.get_runnable_tasks(feature)
        if from_store is not None:
            return from_store

        tasks = self.list(feature)
        graph: list[GraphTask] = []
        entries: dict[str, RunnableTask] = {}
        for task in tasks:
            raw = self.store.get_raw_status(feature, task["folder"]) or {}
            graph.append(GraphTask(task["folder"], task["status"], raw.get("dependsOn")))
            entry: RunnableTask = {
                "folder": task["folder"],
                "name": task["name"],
                "status": task["status"],
            }
            if task.get("beadId"):
                entry["beadId"] = task["beadId"]
            entries[task["folder"]] = entry

        partitioned = partition_tasks(graph, entries)
        return {
            "runnable": partitioned["runnable"],
            "blocked": partitioned["blocked"],
            "completed": partitioned["completed"],
            "inProgress": partitioned["inProgress"],
            "source": "filesystem",
        }
