"""Feature lifecycle on top of the configured ``FeatureStore``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from beadflow.fileio import now_iso
from beadflow.models import (
    DEFAULT_PRIORITY,
    FEATURE_STATUS_ORDER,
    VALID_FEATURE_STATUSES,
    BeadsMode,
    FeatureInfo,
    FeatureJson,
    FeatureStatus,
    validate_priority,
)
from beadflow.paths import plan_path, sanitize_name
from beadflow.plans import PlanService
from beadflow.stores import (
    FeatureExistsError,
    FeatureNotFoundError,
    FeatureStore,
    FeatureTransitionError,
    TaskLister,
)

log = logging.getLogger(__name__)


class FeatureService:
    def __init__(
        self,
        project_root: str | Path,
        store: FeatureStore,
        plan_service: PlanService,
        beads_mode: BeadsMode = "on",
        task_lister: TaskLister | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.store = store
        self.plan_service = plan_service
        self.beads_mode = beads_mode
        self.task_lister = task_lister

    def _require(self, name: str) -> FeatureJson:
        feature = self.get(name)
        if feature is None:
            raise FeatureNotFoundError(name)
        return feature

    def create(
        self, name: str, ticket: str | None = None, priority: int = DEFAULT_PRIORITY
    ) -> FeatureJson:
        name = sanitize_name(name)
        if self.store.exists(name):
            raise FeatureExistsError(name)
        validate_priority(priority)
        return self.store.create(name, ticket, now_iso(), priority)

    def get(self, name: str) -> FeatureJson | None:
        return self.store.get(name)

    def list(self) -> list[str]:
        return self.store.list()

    def get_active(self) -> FeatureJson | None:
        """First feature by name that is not completed."""
        for name in sorted(self.list()):
            feature = self.get(name)
            if feature and feature["status"] != "completed":
                return feature
        return None

    def _check_transition(self, name: str, current: str, target: FeatureStatus) -> None:
        if current == target:
            return
        if current == "completed":
            raise FeatureTransitionError(name, current, target, "completed features are final")
        if FEATURE_STATUS_ORDER[target] > FEATURE_STATUS_ORDER.get(current, 0):
            return
        if current == "approved" and target == "planning":
            if self.task_lister and self.task_lister.list(name):
                raise FeatureTransitionError(name, current, target, "tasks already exist")
            return
        raise FeatureTransitionError(name, current, target, "status cannot move backwards")

    def update_status(self, name: str, status: FeatureStatus) -> FeatureJson:
        """Move a feature to *status*.

        Status only moves forward. The one way back is ``approved`` to
        ``planning`` while the feature has no tasks; ``completed`` is final.
        """
        if status not in VALID_FEATURE_STATUSES:
            raise ValueError(f"Invalid feature status: {status}")
        feature = self._require(name)
        self._check_transition(name, feature["status"], status)
        feature["status"] = status
        if status == "approved" and not feature.get("approvedAt"):
            feature["approvedAt"] = now_iso()
        if status == "completed" and not feature.get("completedAt"):
            feature["completedAt"] = now_iso()
        self.store.save(feature)
        return feature

    def get_info(self, name: str) -> FeatureInfo | None:
        feature = self.get(name)
        if feature is None:
            return None
        tasks = self.task_lister.list(name) if self.task_lister else []
        return {
            "name": feature["name"],
            "status": feature["status"],
            "tasks": tasks,
            "hasPlan": plan_path(self.project_root, name, self.beads_mode).exists(),
            "commentCount": len(self.plan_service.get_comments(name)),
        }

    def complete(self, name: str) -> FeatureJson:
        feature = self._require(name)
        if feature["status"] == "completed":
            raise ValueError(f"Feature '{name}' is already completed")
        updated = self.update_status(name, "completed")
        self.store.complete(updated)
        log.info("Completed feature %s", name)
        return updated

    def set_session(self, name: str, session_id: str) -> None:
        feature = self._require(name)
        feature["sessionId"] = session_id
        self.store.save(feature)

    def get_session(self, name: str) -> str | None:
        feature = self.get(name)
        return feature.get("sessionId") if feature else None

    def patch_metadata(self, name: str, patch: dict[str, Any]) -> FeatureJson:
        feature = self._require(name)
        updated: FeatureJson = {**feature, **patch}  # type: ignore[typeddict-item]
        self.store.save(updated)
        return updated
