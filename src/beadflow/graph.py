"""Task dependency graph: plan parsing, validation, resolution and partitioning.

A plan declares tasks as numbered ``###`` headers. Each task may carry a
``Depends on:`` line:

* ``Depends on: 1, 3`` depends on tasks 1 and 3,
* ``Depends on: none`` has no dependencies,
* no line at all depends on the previous task number (nothing for task 1).

Numbers are resolved to task folders exactly once, when tasks are created.
After that only folders are compared, so renumbering a plan never rewires
existing tasks.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from beadflow.models import RunnableTask, TaskStatusValue
from beadflow.paths import derive_task_folder, folder_order

log = logging.getLogger(__name__)

_TASK_HEADER_RE = re.compile(r"^###\s+(\d+)\.\s+(.+)$")
_SECTION_END_RE = re.compile(r"^(##\s+|###\s+[^0-9])")
_DEPENDS_ON_RE = re.compile(r"^\s*\*{0,2}Depends\s+on\*{0,2}\s*:\s*(.+)$", re.IGNORECASE)


class DependencyGraphError(ValueError):
    """The plan's ``Depends on:`` lines do not form a valid graph."""


@dataclass
class PlanTask:
    """One numbered task parsed from plan.md.

    ``depends_on_numbers`` is None when the plan leaves the dependency
    implicit, and an empty list for an explicit ``none``.
    """

    order: int
    name: str
    folder: str
    description: str = ""
    depends_on_numbers: list[int] | None = None


@dataclass
class GraphTask:
    """The slice of task state the partitioning functions need."""

    folder: str
    status: TaskStatusValue
    depends_on: list[str] | None = None


def _parse_depends_on(value: str) -> list[int]:
    value = value.strip()
    if value.lower() == "none":
        return []
    return [int(part) for part in re.split(r"[,\s]+", value) if part.isdigit()]


def parse_plan_tasks(content: str) -> list[PlanTask]:
    tasks: list[PlanTask] = []
    current: PlanTask | None = None
    body: list[str] = []

    def finish() -> None:
        if current is not None:
            current.description = "\n".join(body).strip()
            tasks.append(current)

    for line in content.split("\n"):
        header = _TASK_HEADER_RE.match(line)
        if header:
            finish()
            order, name = int(header.group(1)), header.group(2).strip()
            current = PlanTask(order=order, name=name, folder=derive_task_folder(order, name))
            body = []
            continue
        if current is None:
            continue
        if _SECTION_END_RE.match(line):
            finish()
            current = None
            body = []
            continue
        depends = _DEPENDS_ON_RE.match(line)
        if depends:
            current.depends_on_numbers = _parse_depends_on(depends.group(1))
        body.append(line)

    finish()
    return tasks


def _graph_error(detail: str, plural: bool = False) -> DependencyGraphError:
    line = 'the "Depends on:" lines' if plural else 'the "Depends on:" line'
    return DependencyGraphError(
        f"Invalid dependency graph in plan.md: {detail} Please fix {line} in plan.md."
    )


def _find_cycle(tasks: Sequence[PlanTask]) -> list[int] | None:
    deps: dict[int, list[int]] = {}
    for task in tasks:
        if task.depends_on_numbers is not None:
            deps[task.order] = list(task.depends_on_numbers)
        else:
            deps[task.order] = [task.order - 1] if task.order > 1 else []

    # 0 = unvisited, 1 = on the current path, 2 = finished
    state = {order: 0 for order in deps}
    path: list[int] = []

    def visit(order: int) -> list[int] | None:
        state[order] = 1
        path.append(order)
        for dep in deps.get(order, []):
            if dep not in state:
                continue
            if state[dep] == 1:
                return [*path[path.index(dep) :], dep]
            if state[dep] == 0:
                cycle = visit(dep)
                if cycle:
                    return cycle
        path.pop()
        state[order] = 2
        return None

    for order in deps:
        if state[order] == 0:
            cycle = visit(order)
            if cycle:
                return cycle
    return None


def validate_dependency_graph(tasks: Sequence[PlanTask]) -> None:
    """Raise ``DependencyGraphError`` for the first problem found, if any."""
    numbers = {task.order for task in tasks}
    available = ", ".join(str(n) for n in sorted(numbers))

    for task in tasks:
        for dep in task.depends_on_numbers or []:
            if dep == task.order:
                raise _graph_error(
                    f'Self-dependency detected for task {task.order} ("{task.name}"). '
                    "A task cannot depend on itself."
                )
            if dep not in numbers:
                raise _graph_error(
                    f"Unknown task number {dep} referenced in dependencies for task "
                    f'{task.order} ("{task.name}"). Available task numbers are: {available}.'
                )

    cycle = _find_cycle(tasks)
    if cycle:
        path = " -> ".join(str(n) for n in cycle)
        raise _graph_error(
            f"Cycle detected in task dependencies: {path}. "
            "Tasks cannot have circular dependencies.",
            plural=True,
        )


def resolve_dependencies(task: PlanTask, tasks: Sequence[PlanTask]) -> list[str]:
    """Turn *task*'s dependency numbers into folders of *tasks*."""
    folder_by_order = {t.order: t.folder for t in tasks}
    if task.depends_on_numbers is not None:
        return [folder_by_order[n] for n in task.depends_on_numbers if n in folder_by_order]
    previous = folder_by_order.get(task.order - 1)
    return [previous] if task.order > 1 and previous else []


def build_effective_dependencies(tasks: Iterable[GraphTask]) -> dict[str, list[str]]:
    """Folder -> folders it waits on.

    Explicit ``depends_on`` wins; otherwise the task waits on the folder with
    the previous numeric prefix. When two folders share a prefix the first one
    seen is used for ordering.
    """
    tasks = list(tasks)
    folder_by_order: dict[int, str] = {}
    for task in tasks:
        order = folder_order(task.folder)
        if order is None:
            continue
        existing = folder_by_order.get(order)
        if existing is None:
            folder_by_order[order] = task.folder
        else:
            log.warning(
                "Duplicate numeric prefix %02d: folder '%s' collides with '%s'. "
                "Using '%s' for dependency ordering; '%s' is skipped.",
                order,
                task.folder,
                existing,
                existing,
                task.folder,
            )

    effective: dict[str, list[str]] = {}
    for task in tasks:
        if task.depends_on is not None:
            effective[task.folder] = list(task.depends_on)
            continue
        order = folder_order(task.folder)
        previous = folder_by_order.get(order - 1) if order and order > 1 else None
        effective[task.folder] = [previous] if previous else []
    return effective


def compute_runnable_and_blocked(
    tasks: Iterable[GraphTask],
) -> tuple[list[str], dict[str, list[str]]]:
    """Split pending tasks into runnable folders and blocked folder -> unmet deps.

    Only ``done`` satisfies a dependency. A dependency on a folder that no
    longer exists is never satisfied.
    """
    tasks = list(tasks)
    status_by_folder: Mapping[str, str] = {t.folder: t.status for t in tasks}
    effective = build_effective_dependencies(tasks)

    runnable: list[str] = []
    blocked: dict[str, list[str]] = {}
    for task in tasks:
        if task.status != "pending":
            continue
        unmet = [d for d in effective.get(task.folder, []) if status_by_folder.get(d) != "done"]
        if unmet:
            blocked[task.folder] = unmet
        else:
            runnable.append(task.folder)
    return runnable, blocked


def partition_tasks(
    tasks: Sequence[GraphTask], entries: Mapping[str, RunnableTask] | None = None
) -> dict[str, list[RunnableTask]]:
    """Sort every task into exactly one of runnable, blocked, completed, inProgress.

    *entries* supplies the reported record per folder; without it a minimal
    ``{folder, name, status}`` record is built.
    """
    entries = entries or {}
    runnable_folders, _ = compute_runnable_and_blocked(tasks)
    runnable_set = set(runnable_folders)
    result: dict[str, list[RunnableTask]] = {
        "runnable": [],
        "blocked": [],
        "completed": [],
        "inProgress": [],
    }
    for task in tasks:
        entry = entries.get(task.folder) or {
            "folder": task.folder,
            "name": task.folder,
            "status": task.status,
        }
        if task.status == "done":
            result["completed"].append(entry)
        elif task.status == "in_progress":
            result["inProgress"].append(entry)
        elif task.status == "pending" and task.folder in runnable_set:
            result["runnable"].append(entry)
        else:
            # Unmet dependencies, or blocked/failed/cancelled/partial.
            result["blocked"].append(entry)
    return result


def validate_unique_prefixes(folders: Iterable[str]) -> list[str]:
    seen: dict[int, str] = {}
    errors: list[str] = []
    for folder in folders:
        order = folder_order(folder)
        if order is None:
            continue
        if order in seen:
            errors.append(f"Duplicate prefix {order:02d}: '{folder}' collides with '{seen[order]}'")
        else:
            seen[order] = folder
    return errors
