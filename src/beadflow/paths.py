"""Canonical filesystem paths for beadflow configuration and feature state.

Ledger mode keeps its local cache under ``.beads/artifacts``; file mode keeps
canonical state under ``docs``. Both share the same per-feature layout::

    <root>/<feature>/feature.json
    <root>/<feature>/plan.md
    <root>/<feature>/context/
    <root>/<feature>/tasks/<folder>/status.json
    <root>/<feature>/tasks/<folder>/spec.md
    <root>/<feature>/tasks/<folder>/report.md
"""

from __future__ import annotations

import os
import re
from pathlib import Path

from beadflow.models import BeadsMode

_env_config_dir = os.environ.get("BEADFLOW_CONFIG_DIR")
BEADFLOW_CONFIG_DIR = (
    Path(_env_config_dir).expanduser() if _env_config_dir else Path.home() / ".config" / "beadflow"
)
GLOBAL_CONFIG_PATH = BEADFLOW_CONFIG_DIR / "config.toml"

PROJECT_CONFIG_DIR = ".beadflow"
LEDGER_DB_PATH = Path(".beads") / "beads.db"

_STATE_DIRS: dict[str, str] = {"on": ".beads/artifacts", "off": "docs"}
TASKS_DIR = "tasks"
CONTEXT_DIR = "context"
PLAN_FILE = "plan.md"
FEATURE_FILE = "feature.json"
STATUS_FILE = "status.json"
REPORT_FILE = "report.md"
SPEC_FILE = "spec.md"
WORKER_PROMPT_FILE = "worker-prompt.md"
WORKTREES_DIR = ".worktrees"

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_FOLDER_ORDER_RE = re.compile(r"^(\d+)-")


class InvalidNameError(ValueError):
    """Raised when a feature or task name cannot be used as a path segment."""


def sanitize_name(name: str) -> str:
    """Validate *name* for use as a single directory name and return it unchanged."""
    if not name or not name.strip():
        raise InvalidNameError("Name cannot be empty")
    if "/" in name or "\\" in name:
        raise InvalidNameError(f'Name cannot contain path separators: "{name}"')
    if name in (".", "..") or name.startswith(".."):
        raise InvalidNameError(f'Name cannot be a relative path reference: "{name}"')
    if name.startswith("."):
        raise InvalidNameError(f'Name cannot start with a dot: "{name}"')
    if _CONTROL_CHARS_RE.search(name):
        raise InvalidNameError(f'Name cannot contain control characters: "{name}"')
    return name


def slugify_task_name(name: str) -> str:
    """Lowercase, turn whitespace runs into dashes, drop anything else non-alphanumeric."""
    slug = re.sub(r"\s+", "-", name.lower())
    return re.sub(r"[^a-z0-9-]", "", slug)


def derive_task_folder(order: int, name_or_slug: str) -> str:
    """Return the stable ``NN-slug`` folder for a task."""
    return f"{order:02d}-{slugify_task_name(name_or_slug)}"


def folder_order(folder: str) -> int | None:
    """Numeric prefix of a task folder, or None when it has none."""
    match = _FOLDER_ORDER_RE.match(folder)
    return int(match.group(1)) if match else None


def folder_display_name(folder: str) -> str:
    return _FOLDER_ORDER_RE.sub("", folder, count=1)


def state_root(project_root: str | Path, mode: BeadsMode) -> Path:
    return Path(project_root) / _STATE_DIRS[mode]


def feature_path(project_root: str | Path, feature: str, mode: BeadsMode) -> Path:
    return state_root(project_root, mode) / feature


def feature_json_path(project_root: str | Path, feature: str, mode: BeadsMode) -> Path:
    return feature_path(project_root, feature, mode) / FEATURE_FILE


def plan_path(project_root: str | Path, feature: str, mode: BeadsMode) -> Path:
    return feature_path(project_root, feature, mode) / PLAN_FILE


def context_path(project_root: str | Path, feature: str, mode: BeadsMode) -> Path:
    return feature_path(project_root, feature, mode) / CONTEXT_DIR


def tasks_path(project_root: str | Path, feature: str, mode: BeadsMode = "off") -> Path:
    return feature_path(project_root, feature, mode) / TASKS_DIR


def task_path(project_root: str | Path, feature: str, folder: str, mode: BeadsMode = "off") -> Path:
    return tasks_path(project_root, feature, mode) / folder


def task_status_path(
    project_root: str | Path, feature: str, folder: str, mode: BeadsMode = "off"
) -> Path:
    return task_path(project_root, feature, folder, mode) / STATUS_FILE


def task_report_path(
    project_root: str | Path, feature: str, folder: str, mode: BeadsMode = "off"
) -> Path:
    return task_path(project_root, feature, folder, mode) / REPORT_FILE


def task_spec_path(
    project_root: str | Path, feature: str, folder: str, mode: BeadsMode = "off"
) -> Path:
    return task_path(project_root, feature, folder, mode) / SPEC_FILE


def task_worker_prompt_path(
    project_root: str | Path, feature: str, folder: str, mode: BeadsMode = "off"
) -> Path:
    return task_path(project_root, feature, folder, mode) / WORKER_PROMPT_FILE


def list_feature_directories(project_root: str | Path, mode: BeadsMode) -> list[str]:
    """Names of feature directories under the mode's state root.

    Dot directories (including ``.worktrees``) are never features.
    """
    root = state_root(project_root, mode)
    if not root.is_dir():
        return []
    return [
        entry.name
        for entry in root.iterdir()
        if entry.is_dir() and entry.name != WORKTREES_DIR and not entry.name.startswith(".")
    ]
