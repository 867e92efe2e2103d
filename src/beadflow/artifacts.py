"""Versioned artifact payloads stored inside ledger description fields.

A ledger record has one free-text description. Structured state is kept in a
delimited block at the end of it::

    <free text, e.g. the task spec>

    <!-- BEADFLOW:ARTIFACTS:BEGIN -->
    {
      "task_state": "{\\"schemaVersion\\": 1, ...}",
      "report": "..."
    }
    <!-- BEADFLOW:ARTIFACTS:END -->

Each value is itself an encoded payload carrying ``schemaVersion``. Decoders
accept the current version and a few legacy shapes, and return None for
anything else.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Literal, TypedDict

from beadflow.models import (
    VALID_FEATURE_STATUSES,
    FeatureJson,
    FeatureStatus,
    PlanComment,
    TaskStatus,
)

CURRENT_SCHEMA_VERSION = 1

ARTIFACTS_BEGIN = "<!-- BEADFLOW:ARTIFACTS:BEGIN -->"
ARTIFACTS_END = "<!-- BEADFLOW:ARTIFACTS:END -->"

ArtifactKind = Literal[
    "spec",
    "worker_prompt",
    "report",
    "plan_approval",
    "approved_plan",
    "plan_comments",
    "feature_state",
    "task_state",
]
ARTIFACT_KINDS = (
    "spec",
    "worker_prompt",
    "report",
    "plan_approval",
    "approved_plan",
    "plan_comments",
    "feature_state",
    "task_state",
)

_FEATURE_STATE_KEYS = (
    "createdAt",
    "approvedAt",
    "completedAt",
    "workflowPath",
    "ticket",
    "sessionId",
)
_TASK_STATE_KEYS = (
    "planTitle",
    "summary",
    "startedAt",
    "completedAt",
    "baseCommit",
    "idempotencyKey",
    "workerSession",
    "beadId",
    "dependsOn",
    "blocker",
    "folder",
)


def _now_iso() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _encode(payload: dict[str, Any]) -> str:
    return json.dumps({k: v for k, v in payload.items() if v is not None})


def _parse(raw: str | None) -> tuple[bool, Any]:
    """Return (parsed_ok, value). Empty input counts as not parsed."""
    if not raw:
        return False, None
    try:
        return True, json.loads(raw)
    except json.JSONDecodeError:
        return False, None


def _versioned(parsed: Any) -> bool:
    return isinstance(parsed, dict) and "schemaVersion" in parsed


# -- feature_state --


class FeatureStateArtifact(TypedDict, total=False):
    schemaVersion: int
    name: str
    status: FeatureStatus
    createdAt: str
    approvedAt: str
    completedAt: str
    workflowPath: str
    ticket: str
    sessionId: str


def _coerce_feature_status(value: object) -> FeatureStatus:
    if isinstance(value, str) and value in VALID_FEATURE_STATUSES:
        return value  # type: ignore[return-value]
    return "planning"


def encode_feature_state(artifact: FeatureStateArtifact) -> str:
    return _encode(dict(artifact))


def decode_feature_state(raw: str | None) -> FeatureStateArtifact | None:
    ok, parsed = _parse(raw)
    if not ok or not isinstance(parsed, dict):
        return None
    if _versioned(parsed):
        return parsed if parsed["schemaVersion"] == CURRENT_SCHEMA_VERSION else None  # type: ignore[return-value]
    if not parsed.get("name") or not parsed.get("status"):
        return None
    migrated: FeatureStateArtifact = {
        "schemaVersion": CURRENT_SCHEMA_VERSION,
        "name": parsed["name"],
        "status": _coerce_feature_status(parsed["status"]),
        "createdAt": parsed.get("createdAt") or _now_iso(),
    }
    for key in ("approvedAt", "completedAt"):
        if parsed.get(key):
            migrated[key] = parsed[key]  # type: ignore[literal-required]
    return migrated


def feature_state_from_feature(feature: FeatureJson) -> FeatureStateArtifact:
    artifact: FeatureStateArtifact = {
        "schemaVersion": CURRENT_SCHEMA_VERSION,
        "name": feature["name"],
        "status": feature["status"],
    }
    for key in _FEATURE_STATE_KEYS:
        value = feature.get(key)
        if value is not None:
            artifact[key] = value  # type: ignore[literal-required]
    return artifact


def feature_state_to_feature(artifact: FeatureStateArtifact, epic_id: str) -> FeatureJson:
    feature: FeatureJson = {
        "name": artifact.get("name", ""),
        "epicBeadId": epic_id,
        "status": _coerce_feature_status(artifact.get("status")),
        "createdAt": artifact.get("createdAt") or _now_iso(),
    }
    for key in _FEATURE_STATE_KEYS[1:]:
        value = artifact.get(key)
        if value is not None:
            feature[key] = value  # type: ignore[literal-required]
    return feature


# -- task_state --


def encode_task_state(status: TaskStatus) -> str:
    return _encode(dict(task_state_from_status(status)))


def decode_task_state(raw: str | None) -> TaskStatus | None:
    ok, parsed = _parse(raw)
    if not ok or not isinstance(parsed, dict):
        return None
    if _versioned(parsed):
        return parsed if parsed["schemaVersion"] == CURRENT_SCHEMA_VERSION else None  # type: ignore[return-value]
    # Pre-versioning payloads were raw status.json dumps.
    migrated = {
        "schemaVersion": CURRENT_SCHEMA_VERSION,
        "status": parsed.get("status") or "pending",
        "origin": parsed.get("origin") or "plan",
    }
    for key in _TASK_STATE_KEYS:
        if parsed.get(key) is not None:
            migrated[key] = parsed[key]
    return migrated  # type: ignore[return-value]


def task_state_from_status(status: TaskStatus) -> TaskStatus:
    artifact: dict[str, Any] = {
        "schemaVersion": CURRENT_SCHEMA_VERSION,
        "status": status["status"],
        "origin": status["origin"],
    }
    for key in _TASK_STATE_KEYS:
        value = status.get(key)
        if value is not None:
            artifact[key] = value
    return artifact  # type: ignore[return-value]


def task_state_to_status(artifact: TaskStatus) -> TaskStatus:
    return {k: v for k, v in artifact.items() if v is not None}  # type: ignore[return-value]


# -- plan_approval --


class PlanApproval(TypedDict, total=False):
    schemaVersion: int
    hash: str
    approvedAt: str
    approvedBySession: str


def encode_plan_approval(artifact: PlanApproval) -> str:
    return _encode(dict(artifact))


def decode_plan_approval(raw: str | None) -> PlanApproval | None:
    ok, parsed = _parse(raw)
    if not ok or not isinstance(parsed, dict):
        return None
    if _versioned(parsed) and parsed["schemaVersion"] != CURRENT_SCHEMA_VERSION:
        return None
    if not parsed.get("hash") or not parsed.get("approvedAt"):
        return None
    approval: PlanApproval = {
        "schemaVersion": CURRENT_SCHEMA_VERSION,
        "hash": parsed["hash"],
        "approvedAt": parsed["approvedAt"],
    }
    if parsed.get("approvedBySession"):
        approval["approvedBySession"] = parsed["approvedBySession"]
    return approval


# -- approved_plan --


class ApprovedPlan(TypedDict):
    schemaVersion: int
    content: str
    snapshotAt: str
    contentHash: str


def encode_approved_plan(artifact: ApprovedPlan) -> str:
    return _encode(dict(artifact))


def decode_approved_plan(raw: str | None) -> ApprovedPlan | None:
    ok, parsed = _parse(raw)
    if not ok or not isinstance(parsed, dict):
        return None
    if _versioned(parsed):
        if parsed["schemaVersion"] == CURRENT_SCHEMA_VERSION and parsed.get("content"):
            return parsed  # type: ignore[return-value]
        return None
    if isinstance(parsed.get("content"), str) and parsed["content"]:
        return {
            "schemaVersion": CURRENT_SCHEMA_VERSION,
            "content": parsed["content"],
            "snapshotAt": parsed.get("snapshotAt") or _now_iso(),
            "contentHash": parsed.get("contentHash") or "",
        }
    return None


# -- plan_comments --


def encode_plan_comments(comments: list[PlanComment]) -> str:
    return _encode({"schemaVersion": CURRENT_SCHEMA_VERSION, "comments": comments})


def decode_plan_comments(raw: str | None) -> list[PlanComment] | None:
    ok, parsed = _parse(raw)
    if not ok or not isinstance(parsed, dict):
        return None
    if _versioned(parsed):
        if parsed["schemaVersion"] == CURRENT_SCHEMA_VERSION and isinstance(
            parsed.get("comments"), list
        ):
            return parsed["comments"]
        return None
    comments = parsed.get("threads") or parsed.get("comments")
    return comments if isinstance(comments, list) else None


# -- worker_prompt / report --


def _encode_content(content: str, stamp_key: str) -> str:
    return _encode({"schemaVersion": CURRENT_SCHEMA_VERSION, "content": content, stamp_key: _now_iso()})


def _decode_content(raw: str | None) -> str | None:
    if not raw:
        return None
    ok, parsed = _parse(raw)
    if not ok:
        # Written before payloads were JSON-wrapped.
        return raw
    if _versioned(parsed):
        if parsed["schemaVersion"] == CURRENT_SCHEMA_VERSION and isinstance(
            parsed.get("content"), str
        ):
            return parsed["content"]
        return None
    if isinstance(parsed, str):
        return parsed
    if isinstance(parsed, dict) and isinstance(parsed.get("content"), str):
        return parsed["content"]
    return None


def encode_worker_prompt(content: str) -> str:
    return _encode_content(content, "generatedAt")


def decode_worker_prompt(raw: str | None) -> str | None:
    return _decode_content(raw)


def encode_task_report(content: str) -> str:
    return _encode_content(content, "createdAt")


def decode_task_report(raw: str | None) -> str | None:
    return _decode_content(raw)


# -- carrier block --


def parse_artifact_block(description: str) -> tuple[str, dict[str, str]]:
    """Split a description into (prefix, artifacts)."""
    begin = description.find(ARTIFACTS_BEGIN)
    end = description.find(ARTIFACTS_END)
    if begin < 0 or end < 0 or end < begin:
        return description.rstrip(), {}

    prefix = description[:begin].rstrip()
    body = description[begin + len(ARTIFACTS_BEGIN) : end].strip()
    if not body:
        return prefix, {}
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return prefix, {}
    if not isinstance(parsed, dict):
        return prefix, {}
    return prefix, {k: v for k, v in parsed.items() if isinstance(v, str)}


def compose_artifact_block(prefix: str, artifacts: dict[str, str]) -> str:
    block = f"{ARTIFACTS_BEGIN}\n{json.dumps(artifacts, indent=2)}\n{ARTIFACTS_END}"
    return f"{prefix}\n\n{block}" if prefix else block


def upsert_artifact(description: str, kind: str, content: str) -> str:
    """Return *description* with *kind* set to *content*, keeping every other kind."""
    prefix, artifacts = parse_artifact_block(description)
    if kind == "spec":
        if not artifacts:
            return content
        return compose_artifact_block(content, artifacts)
    artifacts[kind] = content
    return compose_artifact_block(prefix, artifacts)


def read_artifact(description: str | None, kind: str) -> str | None:
    if not description:
        return None
    prefix, artifacts = parse_artifact_block(description)
    if kind == "spec" and not artifacts.get("spec"):
        # Records created before the block existed hold the spec as plain text.
        if prefix:
            return prefix
        return None if ARTIFACTS_BEGIN in description else description
    return artifacts.get(kind)
