"""Markdown task specs handed to workers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_FILE_ACTION_RE = re.compile(r"-\s*(Create|Modify|Test):", re.IGNORECASE)


@dataclass
class SpecTask:
    folder: str
    name: str
    order: int


@dataclass
class ContextFile:
    name: str
    content: str


@dataclass
class CompletedTask:
    name: str
    summary: str


@dataclass
class SpecData:
    feature_name: str
    task: SpecTask
    depends_on: list[str]
    all_tasks: list[SpecTask]
    plan_section: str | None = None
    context_files: list[ContextFile] = field(default_factory=list)
    completed_tasks: list[CompletedTask] = field(default_factory=list)


def infer_task_type(plan_section: str | None, task_name: str) -> str | None:
    """Guess greenfield / testing / modification from the section's file list."""
    by_name = "testing" if "test" in task_name.lower() else None
    if not plan_section:
        return by_name

    actions = {m.group(1).lower() for m in _FILE_ACTION_RE.finditer(plan_section)}
    if not actions:
        return by_name
    if actions == {"create"}:
        return "greenfield"
    if actions == {"test"}:
        return "testing"
    if "modify" in actions:
        return "modification"
    return None


def format_spec_content(data: SpecData) -> str:
    lines = [
        f"# Task: {data.task.folder}",
        "",
        f"## Feature: {data.feature_name}",
        "",
        "## Dependencies",
        "",
    ]

    if data.depends_on:
        by_folder = {t.folder: t for t in data.all_tasks}
        for dep in data.depends_on:
            task = by_folder.get(dep)
            lines.append(f"- **{task.order}. {task.name}** ({dep})" if task else f"- {dep}")
    else:
        lines.append("_None_")

    lines += ["", "## Plan Section", ""]
    lines.append(data.plan_section.strip() if data.plan_section else "_No plan section available._")
    lines.append("")

    task_type = infer_task_type(data.plan_section, data.task.name)
    if task_type:
        lines += ["## Task Type", "", task_type, ""]

    if data.context_files:
        compiled = "\n\n---\n\n".join(f"## {f.name}\n\n{f.content}" for f in data.context_files)
        lines += ["## Context", "", compiled, ""]

    if data.completed_tasks:
        lines += ["## Completed Tasks", ""]
        lines += [f"- {t.name}: {t.summary}" for t in data.completed_tasks]
        lines.append("")

    return "\n".join(lines)
