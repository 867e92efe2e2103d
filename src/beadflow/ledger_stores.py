"""Ledger backend: the ``br`` ledger is canonical, ``.beads/artifacts`` is a cache.

A feature is an epic; its tasks are child beads. Structured state lives in
artifacts on each bead's description (see ``beadflow.artifacts``).
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

from beadflow import artifacts as codec
from beadflow.fileio import (
    LockOptions,
    ensure_dir,
    locked,
    now_iso,
    read_json,
    read_text,
    write_json_atomic,
    write_text,
)
from beadflow.mapping import ledger_status_to_feature_status, ledger_status_to_task_status
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
    derive_task_folder,
    feature_json_path,
    feature_path,
    folder_display_name,
    folder_order,
    plan_path,
    slugify_task_name,
    task_path,
    task_report_path,
    task_status_path,
)
from beadflow.repository import BeadsRepository, RepositoryError, is_repository_init_failure
from beadflow.stores import BackgroundPatch, TaskNotFoundError

log = logging.getLogger(__name__)

_TICKET_RE = re.compile(r"Ticket:\s*([^\n]+)")
_SHA256_RE = re.compile(r"^[a-f0-9]{64}$")
_CLOSED_LEDGER_STATUSES = frozenset({"closed", "tombstone"})


class LedgerFeatureStore:
    def __init__(self, project_root: str | Path, repository: BeadsRepository) -> None:
        self.project_root = Path(project_root)
        self.repository = repository

    def exists(self, name: str) -> bool:
        return feature_path(self.project_root, name, "on").exists()

    def create(
        self, name: str, ticket: str | None, created_at: str, priority: int
    ) -> FeatureJson:
        result = self.repository.create_epic(name, priority)
        if not result.success:
            raise RuntimeError(f"Failed to create epic: {result.error}")
        epic_id = result.value
        feature: FeatureJson = {
            "name": name,
            "epicBeadId": epic_id,
            "status": "planning",
            "createdAt": created_at,
        }
        if ticket:
            feature["ticket"] = ticket

        directory = feature_path(self.project_root, name, "on")
        try:
            ensure_dir(context_path(self.project_root, name, "on"))
            self._write_feature_state(epic_id, feature)
        except OSError as e:
            shutil.rmtree(directory, ignore_errors=True)
            raise RuntimeError(
                f"Failed to initialize feature '{name}' after creating epic '{epic_id}': {e}"
            ) from e
        log.info("Created feature %s (epic %s)", name, epic_id)
        return feature

    def get(self, name: str) -> FeatureJson | None:
        epic = self.repository.get_epic_by_feature_name(name)
        if not epic.success:
            log.warning("Failed to resolve epic for feature %s: %s", name, epic.error)
            return None
        if not epic.value:
            return None
        epic_id = epic.value

        shown = self.repository.show(epic_id)
        if not shown.success:
            log.warning("Failed to read epic %s: %s", epic_id, shown.error)
            return None
        details: dict[str, Any] = shown.value if isinstance(shown.value, dict) else {}

        ticket = None
        description = self.repository.get_plan_description(epic_id)
        if description.success and description.value:
            match = _TICKET_RE.search(description.value)
            if match:
                ticket = match.group(1).strip()

        state_result = self.repository.get_feature_state(epic_id)
        state: dict[str, Any] = dict(state_result.value or {}) if state_result.success else {}

        feature: dict[str, Any] = {
            "name": details.get("title") or name,
            "epicBeadId": epic_id,
            "status": state.get("status")
            or ledger_status_to_feature_status(details.get("status")),
            "createdAt": state.get("createdAt")
            or str(details.get("created_at") or now_iso()),
            "ticket": state.get("ticket") or ticket,
            "approvedAt": state.get("approvedAt") or details.get("approved_at"),
            "completedAt": state.get("completedAt") or details.get("closed_at"),
            "sessionId": state.get("sessionId"),
            "workflowPath": state.get("workflowPath"),
        }
        cleaned: FeatureJson = {k: v for k, v in feature.items() if v is not None}  # type: ignore[assignment]
        write_json_atomic(feature_json_path(self.project_root, cleaned["name"], "on"), cleaned)
        return cleaned

    def list(self) -> list[str]:
        epics = self.repository.list_epics()
        if not epics.success:
            raise epics.error  # type: ignore[misc]
        return sorted(e.get("title", "") for e in epics.value or [])

    def save(self, feature: FeatureJson) -> None:
        self._write_feature_state(feature["epicBeadId"], feature)

    def complete(self, feature: FeatureJson) -> None:
        self.save(feature)
        result = self.repository.close_bead(feature["epicBeadId"])
        if not result.success:
            log.warning(
                "Failed to close epic %s for feature %s: %s",
                feature["epicBeadId"],
                feature["name"],
                result.error,
            )

    def _write_feature_state(self, epic_id: str, feature: FeatureJson) -> None:
        write_json_atomic(feature_json_path(self.project_root, feature["name"], "on"), feature)
        result = self.repository.set_feature_state(epic_id, feature)
        if not result.success:
            log.warning("Failed to write feature state for %s: %s", feature["name"], result.error)


class LedgerTaskStore:
    def __init__(
        self,
        project_root: str | Path,
        repository: BeadsRepository,
        lock_options: LockOptions | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.repository = repository
        self.lock_options = lock_options

    def _epic_id(self, feature: str) -> str:
        result = self.repository.get_epic_by_feature_name(feature, strict=True)
        if not result.success:
            raise RuntimeError(f"Failed to resolve epic for feature '{feature}': {result.error}")
        return result.value  # type: ignore[return-value]

    def _task_state(self, bead_id: str) -> TaskStatus | None:
        result = self.repository.get_task_state(bead_id)
        return result.value if result.success else None

    def create_task(
        self, feature: str, folder: str, title: str, status: TaskStatus, priority: int
    ) -> TaskStatus:
        epic_id = self._epic_id(feature)
        bead_id = self.repository.create_task(title, epic_id, priority).unwrap()
        created: TaskStatus = {**status, "beadId": bead_id}  # type: ignore[typeddict-item]
        self.repository.set_task_state(bead_id, {**created, "folder": folder}).unwrap()
        return created

    def list(self, feature: str) -> list[TaskInfo]:
        try:
            epic_id = self._epic_id(feature)
            beads = self.repository.list_task_beads_for_epic(epic_id).value or []
        except (RuntimeError, RepositoryError) as e:
            log.warning("Failed to list tasks for feature %s: %s", feature, e)
            return []

        tasks: list[TaskInfo] = []
        for index, bead in enumerate(sorted(beads, key=lambda b: b.get("title", ""))):
            title = bead.get("title", "")
            state = self._task_state(bead["id"])
            if state:
                if (
                    state.get("status") == "cancelled"
                    and bead.get("status") in _CLOSED_LEDGER_STATUSES
                ):
                    # Removed by a plan sync.
                    continue
                folder = state.get("folder") or derive_task_folder(index + 1, title)
                info: dict[str, Any] = {
                    "folder": folder,
                    "name": folder_display_name(folder) or slugify_task_name(title),
                    "beadId": bead["id"],
                    "status": state.get("status", "pending"),
                    "origin": state.get("origin", "plan"),
                    "planTitle": state.get("planTitle") or title,
                }
                if state.get("summary") is not None:
                    info["summary"] = state["summary"]
            else:
                info = {
                    "folder": derive_task_folder(index + 1, title),
                    "name": slugify_task_name(title),
                    "beadId": bead["id"],
                    "status": ledger_status_to_task_status(bead.get("status")),
                    "origin": "plan",
                    "planTitle": title,
                }
            tasks.append(info)  # type: ignore[arg-type]

        return sorted(tasks, key=lambda t: folder_order(t["folder"]) or 0)

    def get(self, feature: str, folder: str) -> TaskInfo | None:
        return next((t for t in self.list(feature) if t["folder"] == folder), None)

    def get_raw_status(self, feature: str, folder: str) -> TaskStatus | None:
        task = self.get(feature, folder)
        if task is None or not task.get("beadId"):
            return None
        state = self._task_state(task["beadId"])
        if state:
            return state
        return {
            "status": task["status"],
            "origin": task["origin"],
            "planTitle": task.get("planTitle") or task["name"],
            "beadId": task["beadId"],
        }

    def get_next_order(self, feature: str) -> int:
        orders = [o for o in (folder_order(t["folder"]) for t in self.list(feature)) if o]
        return max(orders, default=0) + 1

    def save(
        self, feature: str, folder: str, status: TaskStatus, sync_status: bool = False
    ) -> None:
        bead_id = status.get("beadId")
        if not bead_id:
            raise ValueError(f"Cannot save task '{folder}' without beadId in beads mode")
        self.repository.set_task_state(bead_id, {**status, "folder": folder}).unwrap()
        if sync_status and status.get("status"):
            result = self.repository.sync_task_status(bead_id, status["status"])
            if not result.success:
                log.warning("Failed to sync ledger status for %s: %s", bead_id, result.error)

    def _locked(self, feature: str, folder: str, lock_options: LockOptions | None = None):
        # Serializes read-modify-write of one task's state on this machine.
        return locked(
            task_status_path(self.project_root, feature, folder, "on"),
            lock_options or self.lock_options,
        )

    def update(
        self,
        feature: str,
        folder: str,
        updater: Callable[[TaskStatus], TaskStatus],
        sync_status: bool = False,
    ) -> TaskStatus:
        with self._locked(feature, folder):
            current = self.get_raw_status(feature, folder)
            if current is None:
                raise TaskNotFoundError(folder)
            updated = updater(current)
            self.save(feature, folder, updated, sync_status)
        return updated

    def patch_background(
        self,
        feature: str,
        folder: str,
        patch: BackgroundPatch,
        lock_options: LockOptions | None = None,
    ) -> TaskStatus:
        with self._locked(feature, folder, lock_options):
            current = self.get_raw_status(feature, folder)
            if current is None:
                raise TaskNotFoundError(folder)

            updated: dict[str, Any] = {**current, "schemaVersion": TASK_STATUS_SCHEMA_VERSION}
            if "idempotencyKey" in patch:
                updated["idempotencyKey"] = patch["idempotencyKey"]
            if "workerSession" in patch:
                updated["workerSession"] = {
                    **(current.get("workerSession") or {}),
                    **patch["workerSession"],
                }

            bead_id = current.get("beadId")
            if bead_id:
                # Heartbeats are frequent; skip the flush a repository write would do.
                encoded = codec.encode_task_state({**updated, "folder": folder})  # type: ignore[typeddict-item]
                self.repository.gateway.upsert_artifact(bead_id, "task_state", encoded)
        return updated  # type: ignore[return-value]

    def delete(self, feature: str, folder: str) -> None:
        """Cancel and close the task's bead; ledger records are never destroyed."""
        current = self.get_raw_status(feature, folder)
        bead_id = current.get("beadId") if current else None
        if current and bead_id:
            self.repository.set_task_state(
                bead_id, {**current, "status": "cancelled", "folder": folder}
            ).unwrap()
            result = self.repository.close_bead(bead_id)
            if not result.success:
                log.warning("Failed to close bead %s for task %s: %s", bead_id, folder, result.error)
        shutil.rmtree(task_path(self.project_root, feature, folder, "on"), ignore_errors=True)

    def write_artifact(
        self, feature: str, folder: str, kind: TaskArtifactKind, content: str
    ) -> str:
        status = self.get_raw_status(feature, folder)
        bead_id = status.get("beadId") if status else None
        if not bead_id:
            raise ValueError(f"Task '{folder}' does not have beadId")
        if kind == "worker_prompt":
            content = codec.encode_worker_prompt(content)
        elif kind == "report":
            content = codec.encode_task_report(content)
        self.repository.upsert_task_artifact(bead_id, kind, content).unwrap()
        return bead_id

    def read_artifact(self, feature: str, folder: str, kind: TaskArtifactKind) -> str | None:
        imported = self.repository.import_artifacts()
        if not imported.success:
            log.warning("Import before artifact read failed: %s", imported.error)
        status = self.get_raw_status(feature, folder)
        bead_id = status.get("beadId") if status else None
        if not bead_id:
            return None
        result = self.repository.read_task_artifact(bead_id, kind)
        return result.value if result.success else None

    def write_report(self, feature: str, folder: str, report: str) -> str:
        self.write_artifact(feature, folder, "report", report)
        path = task_report_path(self.project_root, feature, folder, "on")
        write_text(path, report)
        return str(path)

    def get_runnable_tasks(self, feature: str) -> RunnableTasksResult | None:
        return None

    def flush(self) -> None:
        result = self.repository.flush_artifacts()
        if not result.success:
            log.warning("Ledger flush failed: %s", result.error)


class LedgerPlanStore:
    """Plan approval, snapshot and comments stored as epic artifacts.

    Approvals and comments written to ``feature.json`` by older versions are
    migrated into artifacts the first time they are read.
    """

    def __init__(self, project_root: str | Path, repository: BeadsRepository) -> None:
        self.project_root = Path(project_root)
        self.repository = repository

    @staticmethod
    def _raise_if_init_failure(error: RepositoryError | None, context: str) -> None:
        if is_repository_init_failure(error):
            raise RuntimeError(f"{context}: {error}")

    def _check(self, result: Any, context: str) -> bool:
        if result.success:
            return True
        self._raise_if_init_failure(result.error, context)
        log.warning("%s: %s", context, result.error)
        return False

    def _epic_id(self, feature: str) -> str | None:
        result = self.repository.get_epic_by_feature_name(feature)
        if not result.success:
            self._raise_if_init_failure(
                result.error, f"Failed to resolve epic for feature '{feature}'"
            )
            return None
        return result.value

    def _legacy_feature(self, feature: str) -> dict[str, Any] | None:
        return read_json(feature_json_path(self.project_root, feature, "on")) or read_json(
            feature_json_path(self.project_root, feature, "off")
        )

    def approve(
        self,
        feature: str,
        content: str,
        plan_hash: str,
        timestamp: str,
        session_id: str | None = None,
    ) -> None:
        epic_id = self._epic_id(feature)
        if not epic_id:
            return
        self._check(
            self.repository.set_plan_approval(epic_id, plan_hash, timestamp, session_id),
            "Failed to set plan approval",
        )
        self._check(
            self.repository.set_approved_plan(epic_id, content, plan_hash),
            "Failed to set approved plan",
        )
        self._check(
            self.repository.add_workflow_label(epic_id, "approved"),
            "Failed to apply approved workflow label",
        )

        cache_path = feature_json_path(self.project_root, feature, "on")
        cached = read_json(cache_path)
        if cached:
            cached.update(
                status=advance_feature_status(cached.get("status"), "approved"),
                approvedAt=timestamp,
                planApprovalHash=plan_hash,
            )
            write_json_atomic(cache_path, cached)
            self._check(
                self.repository.set_feature_state(epic_id, cached),
                "Failed to cache feature state after plan approval",
            )

    def is_approved(self, feature: str, current_hash: str) -> bool:
        epic_id = self._epic_id(feature)
        if not epic_id:
            return False

        result = self.repository.get_plan_approval(epic_id)
        if not result.success:
            self._raise_if_init_failure(
                result.error, f"Failed to read plan approval for feature '{feature}'"
            )
        approval = result.value if result.success else None

        if not approval:
            legacy = self._legacy_feature(feature)
            if (
                legacy
                and legacy.get("status") == "approved"
                and legacy.get("planApprovalHash")
                and legacy["planApprovalHash"] == current_hash
            ):
                self._check(
                    self.repository.set_plan_approval(
                        epic_id,
                        legacy["planApprovalHash"],
                        legacy.get("approvedAt") or now_iso(),
                        legacy.get("sessionId"),
                    ),
                    "Failed to migrate legacy plan approval",
                )
                self._check(
                    self.repository.set_approved_plan(
                        epic_id,
                        read_text(plan_path(self.project_root, feature, "on")) or "",
                        legacy["planApprovalHash"],
                    ),
                    "Failed to migrate legacy approved plan snapshot",
                )
                return True
            return False

        stored = approval.get("hash", "")
        if not _SHA256_RE.match(stored):
            return False
        return stored == current_hash

    def revoke_approval(self, feature: str, keep_status: bool = False) -> None:
        epic_id = self._epic_id(feature)
        if not epic_id:
            return
        context = f"Failed to revoke plan approval for feature '{feature}'"
        # Empty values decode as "no approval".
        self._check(self.repository.set_plan_approval(epic_id, "", ""), context)
        self._check(self.repository.set_approved_plan(epic_id, "", ""), context)

        cache_path = feature_json_path(self.project_root, feature, "on")
        cached = read_json(cache_path)
        if not cached:
            return
        revoked = without_plan_approval(cached, keep_status)
        if revoked != cached:
            write_json_atomic(cache_path, revoked)
            self._check(self.repository.set_feature_state(epic_id, revoked), context)

    def get_comments(self, feature: str) -> list[PlanComment]:
        epic_id = self._epic_id(feature)
        if not epic_id:
            return []
        result = self.repository.get_plan_comments(epic_id)
        if result.success and result.value:
            return result.value
        if not result.success:
            self._raise_if_init_failure(
                result.error, f"Failed to read plan comments for feature '{feature}'"
            )

        cached = read_json(feature_json_path(self.project_root, feature, "on")) or {}
        legacy = cached.get("planComments") or []
        if legacy:
            self._check(
                self.repository.set_plan_comments(epic_id, legacy),
                "Failed to migrate legacy plan comments",
            )
        return legacy

    def set_comments(self, feature: str, comments: list[PlanComment]) -> None:
        epic_id = self._epic_id(feature)
        if not epic_id:
            return
        self._check(
            self.repository.set_plan_comments(epic_id, comments),
            f"Failed to set plan comments for feature '{feature}'",
        )

    def sync_plan_description(self, feature: str, content: str) -> None:
        epic_id = self._epic_id(feature)
        if not epic_id:
            return
        self._check(
            self.repository.set_plan_description(epic_id, content),
            f"Failed to sync plan description for feature '{feature}'",
        )

    def sync_plan_comment(self, feature: str, comment: PlanComment) -> None:
        epic_id = self._epic_id(feature)
        if not epic_id:
            return
        text = f"[{comment['author']}] Line {comment['line']}: {comment['body']}"
        self._check(
            self.repository.append_plan_comment(epic_id, text),
            f"Failed to sync plan comment for feature '{feature}'",
        )
