"""Plan lifecycle: write, review comments, approve, revoke."""

from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path

from beadflow.fileio import now_iso, read_text, write_text
from beadflow.models import BeadsMode, PlanComment, PlanReadResult, WorkflowPath
from beadflow.paths import plan_path
from beadflow.plan_gates import (
    GatesMode,
    PlanGateError,
    apply_gate,
    detect_workflow_path,
    validate_discovery_section,
    validate_lightweight_plan,
)
from beadflow.stores import FeatureStore, PlanStore, TaskLister

log = logging.getLogger(__name__)


def compute_plan_hash(content: str) -> str:
    """SHA-256 hex digest of the plan text."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class PlanService:
    def __init__(
        self,
        project_root: str | Path,
        store: PlanStore,
        beads_mode: BeadsMode = "on",
        feature_store: FeatureStore | None = None,
        task_lister: TaskLister | None = None,
        gates_mode: GatesMode = "warn",
    ) -> None:
        self.project_root = Path(project_root)
        self.store = store
        self.beads_mode = beads_mode
        self.feature_store = feature_store
        self.task_lister = task_lister
        self.gates_mode = gates_mode

    def path(self, feature: str) -> Path:
        return plan_path(self.project_root, feature, self.beads_mode)

    def _require_plan(self, feature: str) -> str:
        content = read_text(self.path(feature))
        if content is None:
            raise ValueError(f"No plan.md found for feature '{feature}'")
        return content

    def _has_tasks(self, feature: str) -> bool:
        return bool(self.task_lister and self.task_lister.list(feature))

    def _record_workflow_path(self, feature: str, workflow_path: WorkflowPath) -> None:
        if self.feature_store is None:
            return
        current = self.feature_store.get(feature)
        if current is None or current.get("workflowPath") == workflow_path:
            return
        self.feature_store.save({**current, "workflowPath": workflow_path})

    def write(self, feature: str, content: str) -> str:
        """Write plan.md; a changed plan drops comments and any approval.

        The discovery gate runs first and, when enforced, rejects the plan
        before anything is written.
        """
        apply_gate(
            validate_discovery_section(content),
            self.gates_mode,
            f"Plan for feature '{feature}'",
        )
        path = self.path(feature)
        current = read_text(path)
        write_text(path, content)

        self.clear_comments(feature)
        if current is not None and current != content:
            self.revoke_approval(feature)
            log.info("Plan for %s changed; approval revoked", feature)

        self.store.sync_plan_description(feature, content)
        self._record_workflow_path(feature, detect_workflow_path(content))
        return str(path)

    def read(self, feature: str) -> PlanReadResult | None:
        content = read_text(self.path(feature))
        if content is None:
            return None
        return {
            "content": content,
            "status": "approved" if self.is_approved(feature) else "planning",
            "comments": self.get_comments(feature),
        }

    def approve(self, feature: str, session_id: str | None = None) -> str:
        """Approve the current plan text and return its hash.

        A plan that declares the lightweight workflow must qualify as one.
        """
        content = self._require_plan(feature)
        workflow_path = detect_workflow_path(content)
        if workflow_path == "lightweight":
            issues = validate_lightweight_plan(content)
            if issues:
                raise PlanGateError(issues)
        plan_hash = compute_plan_hash(content)
        self.store.approve(feature, content, plan_hash, now_iso(), session_id)
        self._record_workflow_path(feature, workflow_path)
        log.info("Approved plan for %s (%s)", feature, plan_hash[:12])
        return plan_hash

    def is_approved(self, feature: str) -> bool:
        content = read_text(self.path(feature))
        if content is None:
            return False
        return self.store.is_approved(feature, compute_plan_hash(content))

    def revoke_approval(self, feature: str) -> None:
        """Drop the approval. Once tasks exist the feature keeps its status."""
        self.store.revoke_approval(feature, keep_status=self._has_tasks(feature))

    def get_comments(self, feature: str) -> list[PlanComment]:
        return self.store.get_comments(feature)

    def add_comment(self, feature: str, line: int, body: str, author: str) -> PlanComment:
        self._require_plan(feature)
        comment: PlanComment = {
            "id": f"comment-{time.time_ns() // 1_000_000}",
            "line": line,
            "body": body,
            "author": author,
            "timestamp": now_iso(),
        }
        self.store.set_comments(feature, [*self.get_comments(feature), comment])
        self.store.sync_plan_comment(feature, comment)
        return comment

    def clear_comments(self, feature: str) -> None:
        self.store.set_comments(feature, [])
