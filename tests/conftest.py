"""Shared fixtures: isolated config, a scripted in-memory ``br``, wired workspaces."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from beadflow.config import BeadflowConfig
from beadflow.workspace import Workspace, open_workspace


class FakeBr:
    """Stand-in for ``subprocess.run`` that behaves like a tiny ``br`` ledger.

    Every call is recorded in ``calls`` (argv without the executable).
    ``fail_on`` maps a subcommand to ``(stderr, stdout)`` for a scripted
    failure, consumed once per entry in ``fail_times``.
    """

    def __init__(self) -> None:
        self.issues: dict[str, dict[str, Any]] = {}
        self.comments: dict[str, list[str]] = {}
        self.calls: list[list[str]] = []
        self.fail_on: dict[str, tuple[str, str]] = {}
        self.fail_times: dict[str, int] = {}
        self.missing = False
        self._counter = 0

    def commands(self, name: str) -> list[list[str]]:
        return [c for c in self.calls if c and c[0] == name]

    def issue_by_title(self, title: str) -> dict[str, Any]:
        return next(i for i in self.issues.values() if i["title"] == title)

    def __call__(self, argv: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        if self.missing:
            raise FileNotFoundError(2, "No such file or directory", argv[0])
        args = list(argv[1:])
        self.calls.append(args)
        name = args[0] if args else ""

        if name in self.fail_on and self.fail_times.get(name, 1) > 0:
            self.fail_times[name] = self.fail_times.get(name, 1) - 1
            stderr, stdout = self.fail_on[name]
            raise subprocess.CalledProcessError(1, argv, output=stdout, stderr=stderr)

        stdout = self._dispatch(args, Path(kwargs.get("cwd") or "."))
        return subprocess.CompletedProcess(argv, 0, stdout=stdout, stderr="")

    def _dispatch(self, args: list[str], cwd: Path) -> str:
        name = args[0]
        if name == "--version":
            return "br 0.4.2\n"
        if name == "init":
            db = cwd / ".beads" / "beads.db"
            db.parent.mkdir(parents=True, exist_ok=True)
            db.touch()
            return "Initialized\n"
        if name == "sync":
            return ""
        if name == "create":
            return self._create(args)
        if name == "close":
            self._issue(args[1])["status"] = "closed"
            return ""
        if name == "update":
            return self._update(args)
        if name == "comments":
            self.comments.setdefault(args[2], []).append(args[3])
            return ""
        if name == "show":
            return json.dumps([self._issue(args[1])])
        if name == "list":
            return self._list(args)
        if name == "dep":
            parent = args[2]
            children = [i for i in self.issues.values() if i.get("parent") == parent]
            return json.dumps([{"type": "parent-child", "issue": c} for c in children])
        raise subprocess.CalledProcessError(2, ["br", *args], output="", stderr="unknown command")

    def _issue(self, bead_id: str) -> dict[str, Any]:
        if bead_id not in self.issues:
            raise subprocess.CalledProcessError(
                1, ["br", "show", bead_id], output="", stderr=f"issue {bead_id} not found"
            )
        return self.issues[bead_id]

    def _create(self, args: list[str]) -> str:
        self._counter += 1
        bead_id = f"bd-{self._counter}"
        issue: dict[str, Any] = {
            "id": bead_id,
            "title": args[1],
            "status": "open",
            "issue_type": args[args.index("-t") + 1],
            "priority": int(args[args.index("-p") + 1]),
            "description": "",
            "labels": [],
        }
        if "--parent" in args:
            issue["parent"] = args[args.index("--parent") + 1]
        self.issues[bead_id] = issue
        return json.dumps({"id": bead_id})

    def _update(self, args: list[str]) -> str:
        issue = self._issue(args[1])
        rest = args[2:]
        if "--claim" in rest:
            issue["status"] = "in_progress"
        if "--unclaim" in rest:
            issue["status"] = "open"
        for flag in ("-s", "--status"):
            if flag in rest:
                issue["status"] = rest[rest.index(flag) + 1]
        if "--add-label" in rest:
            issue["labels"].append(rest[rest.index("--add-label") + 1])
        if "--description" in rest:
            issue["description"] = rest[rest.index("--description") + 1]
        return ""

    def _list(self, args: list[str]) -> str:
        issues = list(self.issues.values())
        if "--type" in args:
            kind = args[args.index("--type") + 1]
            issues = [i for i in issues if i["issue_type"] == kind]
        if "-s" in args:
            issues = [i for i in issues if i["status"] == args[args.index("-s") + 1]]
        elif "-a" not in args:
            issues = [i for i in issues if i["status"] != "closed"]
        return json.dumps(issues)


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Never read the developer's real ~/.config/beadflow."""
    monkeypatch.delenv("BEADFLOW_BEADS_MODE", raising=False)
    monkeypatch.setattr("beadflow.paths.GLOBAL_CONFIG_PATH", tmp_path / "global" / "config.toml")


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture()
def fake_br() -> FakeBr:
    fake = FakeBr()
    with patch("beadflow.gateway.subprocess.run", fake):
        yield fake


@pytest.fixture()
def ledger_ws(project_root: Path, fake_br: FakeBr) -> Workspace:
    return open_workspace(project_root, BeadflowConfig(beads_mode="on"))


@pytest.fixture()
def file_ws(project_root: Path) -> Workspace:
    return open_workspace(project_root, BeadflowConfig(beads_mode="off"))


@pytest.fixture(params=["off", "on"])
def any_ws(request: pytest.FixtureRequest, project_root: Path) -> Workspace:
    """The same workspace API over either backend."""
    if request.param == "on":
        request.getfixturevalue("fake_br")
    return open_workspace(project_root, BeadflowConfig(beads_mode=request.param))


PLAN = """# Plan

## Tasks

### 1. Setup database
Create the schema.

### 2. Build API
Depends on: 1

- Create: api.py

### 3. Write docs
Depends on: none

### 4. Integration tests
Depends on: 2, 3
"""


@pytest.fixture()
def plan_text() -> str:
    return PLAN
