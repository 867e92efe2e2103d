"""High-level ledger operations on top of ``BeadGateway``.

``BeadsRepository`` owns three things the stores should not repeat:

* encoding and decoding of artifacts (``beadflow.artifacts``),
* the sync policy (import before reads, flush after writes),
* error normalization: every public method returns a ``Result`` whose error
  is always a ``RepositoryError``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, TypeVar

from beadflow import artifacts as codec
from beadflow.fileio import now_iso
from beadflow.gateway import BeadGateway
from beadflow.models import TASK_ARTIFACT_KINDS, FeatureJson, LedgerIssue, PlanComment, TaskStatus

log = logging.getLogger(__name__)

T = TypeVar("T")


class RepositoryError(Exception):
    """Normalized ledger failure.

    ``code`` is ``epic_not_found``, ``sync_failed``, ``invalid_artifact`` or
    ``gateway_error``; ``cause`` keeps the underlying exception.
    """

    def __init__(self, code: str, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.cause = cause


@dataclass
class Result(Generic[T]):
    success: bool
    value: T | None = None
    error: RepositoryError | None = None

    @classmethod
    def ok(cls, value: T | None = None) -> Result[T]:
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: RepositoryError) -> Result[T]:
        return cls(success=False, error=error)

    def unwrap(self) -> T | None:
        """Return the value, or raise the error."""
        if not self.success:
            if self.error is None:
                raise RepositoryError("gateway_error", "Failed result carries no error")
            raise self.error
        return self.value


@dataclass(frozen=True)
class SyncPolicy:
    auto_import: bool = False
    auto_flush: bool = True


def is_repository_init_failure(error: RepositoryError | None) -> bool:
    """True when *error* means the ledger itself could not be initialized."""
    if error is None or error.code != "gateway_error":
        return False
    message = str(error)
    return "BR_INIT_FAILED" in message or "BR_NOT_INITIALIZED" in message


def _invalid_artifact_kind(kind: str) -> RepositoryError:
    return RepositoryError("invalid_artifact", f"Unknown task artifact kind: {kind}")


def _normalize_error(error: BaseException) -> RepositoryError:
    if isinstance(error, RepositoryError):
        return error
    return RepositoryError("gateway_error", f"Bead gateway error: {error}", error)


@dataclass
class BeadsRepository:
    project_root: Path
    sync_policy: SyncPolicy = field(default_factory=SyncPolicy)
    gateway: BeadGateway | None = None

    def __post_init__(self) -> None:
        self.project_root = Path(self.project_root)
        if self.gateway is None:
            self.gateway = BeadGateway(self.project_root)

    # -- plumbing --

    def _read(self, fn: Callable[[], T]) -> Result[T]:
        try:
            self._before_read()
            return Result.ok(fn())
        except Exception as e:
            return Result.fail(_normalize_error(e))

    def _write(self, fn: Callable[[], Any]) -> Result[None]:
        try:
            fn()
        except Exception as e:
            return Result.fail(_normalize_error(e))
        self._after_write()
        return Result.ok()

    def _before_read(self) -> None:
        if self.sync_policy.auto_import:
            result = self.import_artifacts()
            if not result.success:
                log.warning("Auto-import of ledger artifacts failed: %s", result.error)

    def _after_write(self) -> None:
        if self.sync_policy.auto_flush:
            result = self.flush_artifacts()
            if not result.success:
                log.warning("Auto-flush of ledger artifacts failed: %s", result.error)

    # -- sync --

    def import_artifacts(self) -> Result[None]:
        try:
            self.gateway.import_artifacts()
        except Exception as e:
            return Result.fail(RepositoryError("sync_failed", "Failed to import bead artifacts", e))
        return Result.ok()

    def flush_artifacts(self) -> Result[None]:
        try:
            self.gateway.flush_artifacts()
        except Exception as e:
            return Result.fail(RepositoryError("sync_failed", "Failed to flush bead artifacts", e))
        return Result.ok()

    # -- lifecycle --

    def create_epic(self, name: str, priority: int) -> Result[str]:
        try:
            epic_id = self.gateway.create_epic(name, priority)
        except Exception as e:
            return Result.fail(_normalize_error(e))
        self._after_write()
        return Result.ok(epic_id)

    def create_task(self, title: str, epic_id: str, priority: int) -> Result[str]:
        try:
            task_id = self.gateway.create_task(title, epic_id, priority)
        except Exception as e:
            return Result.fail(_normalize_error(e))
        self._after_write()
        return Result.ok(task_id)

    def close_bead(self, bead_id: str) -> Result[None]:
        return self._write(lambda: self.gateway.close_bead(bead_id))

    def sync_task_status(self, bead_id: str, status: str) -> Result[None]:
        return self._write(lambda: self.gateway.sync_task_status(bead_id, status))

    def get_epic_by_feature_name(self, name: str, strict: bool = False) -> Result[str]:
        result = self._read(lambda: self.gateway.list(type="epic", status="all"))
        if not result.success:
            return Result(success=False, error=result.error)
        epic = next((e for e in result.value or [] if e.get("title") == name), None)
        if epic is None or not epic.get("id"):
            if strict:
                return Result.fail(
                    RepositoryError("epic_not_found", f"Epic bead for feature '{name}' not found")
                )
            return Result.ok(None)
        return Result.ok(epic["id"])

    def list_epics(self) -> Result[list[LedgerIssue]]:
        return self._read(lambda: self.gateway.list(type="epic", status="all"))

    def show(self, bead_id: str) -> Result[Any]:
        return self._read(lambda: self.gateway.show(bead_id))

    # -- feature / task state --

    def get_feature_state(self, epic_id: str) -> Result[FeatureJson]:
        def read() -> FeatureJson | None:
            artifact = codec.decode_feature_state(
                self.gateway.read_artifact(epic_id, "feature_state")
            )
            return codec.feature_state_to_feature(artifact, epic_id) if artifact else None

        return self._read(read)

    def set_feature_state(self, epic_id: str, feature: FeatureJson) -> Result[None]:
        encoded = codec.encode_feature_state(codec.feature_state_from_feature(feature))
        return self._write(lambda: self.gateway.upsert_artifact(epic_id, "feature_state", encoded))

    def get_task_state(self, task_id: str) -> Result[TaskStatus]:
        def read() -> TaskStatus | None:
            artifact = codec.decode_task_state(self.gateway.read_artifact(task_id, "task_state"))
            return codec.task_state_to_status(artifact) if artifact else None

        return self._read(read)

    def set_task_state(self, task_id: str, status: TaskStatus) -> Result[None]:
        encoded = codec.encode_task_state(status)
        return self._write(lambda: self.gateway.upsert_artifact(task_id, "task_state", encoded))

    # -- plan --

    # The plan text is the description prefix, so stored artifacts survive a rewrite.

    def get_plan_description(self, epic_id: str) -> Result[str]:
        return self._read(lambda: self.gateway.read_artifact(epic_id, "spec"))

    def set_plan_description(self, epic_id: str, content: str) -> Result[None]:
        return self._write(lambda: self.gateway.upsert_artifact(epic_id, "spec", content))

    def get_plan_approval(self, epic_id: str) -> Result[codec.PlanApproval]:
        return self._read(
            lambda: codec.decode_plan_approval(self.gateway.read_artifact(epic_id, "plan_approval"))
        )

    def set_plan_approval(
        self,
        epic_id: str,
        hash: str,
        approved_at: str,
        approved_by_session: str | None = None,
    ) -> Result[None]:
        approval: codec.PlanApproval = {
            "schemaVersion": codec.CURRENT_SCHEMA_VERSION,
            "hash": hash,
            "approvedAt": approved_at,
        }
        if approved_by_session:
            approval["approvedBySession"] = approved_by_session
        encoded = codec.encode_plan_approval(approval)
        return self._write(lambda: self.gateway.upsert_artifact(epic_id, "plan_approval", encoded))

    def get_approved_plan(self, epic_id: str) -> Result[str]:
        def read() -> str | None:
            artifact = codec.decode_approved_plan(
                self.gateway.read_artifact(epic_id, "approved_plan")
            )
            return artifact["content"] if artifact else None

        return self._read(read)

    def set_approved_plan(self, epic_id: str, content: str, content_hash: str) -> Result[None]:
        encoded = codec.encode_approved_plan(
            {
                "schemaVersion": codec.CURRENT_SCHEMA_VERSION,
                "content": content,
                "snapshotAt": now_iso(),
                "contentHash": content_hash,
            }
        )
        return self._write(lambda: self.gateway.upsert_artifact(epic_id, "approved_plan", encoded))

    def append_plan_comment(self, epic_id: str, comment: str) -> Result[None]:
        return self._write(lambda: self.gateway.add_comment(epic_id, comment))

    def get_plan_comments(self, epic_id: str) -> Result[list[PlanComment]]:
        return self._read(
            lambda: codec.decode_plan_comments(self.gateway.read_artifact(epic_id, "plan_comments"))
        )

    def set_plan_comments(self, epic_id: str, comments: list[PlanComment]) -> Result[None]:
        encoded = codec.encode_plan_comments(comments)
        return self._write(lambda: self.gateway.upsert_artifact(epic_id, "plan_comments", encoded))

    # -- task artifacts --

    def upsert_task_artifact(self, task_id: str, kind: str, content: str) -> Result[None]:
        if kind not in TASK_ARTIFACT_KINDS:
            return Result.fail(_invalid_artifact_kind(kind))
        return self._write(lambda: self.gateway.upsert_artifact(task_id, kind, content))

    def read_task_artifact(self, task_id: str, kind: str) -> Result[str]:
        if kind not in TASK_ARTIFACT_KINDS:
            return Result.fail(_invalid_artifact_kind(kind))

        def read() -> str | None:
            raw = self.gateway.read_artifact(task_id, kind)
            if kind == "worker_prompt":
                return codec.decode_worker_prompt(raw)
            if kind == "report":
                return codec.decode_task_report(raw)
            return raw

        return self._read(read)

    def list_task_beads_for_epic(self, epic_id: str) -> Result[list[LedgerIssue]]:
        return self._read(lambda: self.gateway.list(type="task", parent=epic_id))

    def add_workflow_label(self, bead_id: str, label: str) -> Result[None]:
        return self._write(lambda: self.gateway.add_label(bead_id, label))
