"""Tests for the CLI commands."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from beadflow import paths
from beadflow.cli import main


def _invoke(root: Path, *args: str, input: str | None = None, mode: str | None = "off"):
    env = {"BEADFLOW_BEADS_MODE": mode} if mode else {}
    return CliRunner().invoke(main, ["--root", str(root), *args], input=input, env=env)


def _ok(result) -> dict:
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def _error(result) -> str:
    assert result.exit_code != 0
    payload = json.loads(result.output)
    assert payload["ok"] is False
    return payload["error"]


@pytest.fixture()
def plan_file(tmp_path, plan_text) -> Path:
    path = tmp_path / "plan.md"
    path.write_text(plan_text)
    return path


# ---------------------------------------------------------------------------
# JSON error handling (group-level)
# ---------------------------------------------------------------------------


def test_unknown_command_suggests_close_match(project_root):
    error = _error(_invoke(project_root, "featur"))
    assert "No such command 'featur'." in error
    assert "Did you mean: feature?" in error


def test_unknown_option_is_json(project_root):
    error = _error(_invoke(project_root, "feature", "list", "--no-such-flag"))
    assert "no-such-flag" in error.lower() or "no such option" in error.lower()


def test_missing_argument_is_json(project_root):
    result = _invoke(project_root, "plan", "approve")
    assert result.exit_code == 2
    assert "FEATURE_NAME" in _error(result)


def test_domain_errors_are_json(project_root):
    result = _invoke(project_root, "feature", "show", "ghost")
    assert result.exit_code == 1
    assert _error(result) == "Feature 'ghost' not found"

    _ok(_invoke(project_root, "feature", "create", "auth"))
    assert _error(_invoke(project_root, "feature", "create", "auth")) == "Feature 'auth' already exists"
    assert _error(_invoke(project_root, "plan", "approve", "auth")) == (
        "No plan.md found for feature 'auth'"
    )
    assert "Priority must be" in _error(_invoke(project_root, "feature", "create", "x", "-p", "7"))
    assert "Name cannot" in _error(_invoke(project_root, "feature", "create", ".x"))


def test_version(project_root):
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "version" in result.output


# ---------------------------------------------------------------------------
# feature / plan / task flow (file mode)
# ---------------------------------------------------------------------------


def test_feature_commands(project_root):
    created = _ok(_invoke(project_root, "feature", "create", "auth", "--ticket", "JIRA-1"))
    assert created["ticket"] == "JIRA-1"
    assert (project_root / "docs" / "auth" / "feature.json").exists()

    assert _ok(_invoke(project_root, "feature", "list")) == {"features": ["auth"]}
    shown = _ok(_invoke(project_root, "feature", "show", "auth"))
    assert shown["info"]["hasPlan"] is False
    assert _ok(_invoke(project_root, "feature", "active"))["feature"]["name"] == "auth"

    session = _ok(_invoke(project_root, "feature", "session", "auth", "--set", "ses-1"))
    assert session == {"name": "auth", "sessionId": "ses-1"}

    assert _ok(_invoke(project_root, "feature", "status", "auth", "executing"))["status"] == "executing"
    assert _ok(_invoke(project_root, "feature", "complete", "auth"))["status"] == "completed"
    assert _ok(_invoke(project_root, "feature", "active")) == {"feature": None}


def test_plan_commands(project_root, plan_file, plan_text):
    _ok(_invoke(project_root, "feature", "create", "auth"))

    written = _ok(_invoke(project_root, "plan", "write", "auth", "-f", str(plan_file)))
    assert written["path"].endswith("docs/auth/plan.md")

    comment = _ok(
        _invoke(project_root, "plan", "comment", "auth", "--line", "4", "--body", "Why?")
    )
    assert comment["author"] == "reviewer"

    read = _ok(_invoke(project_root, "plan", "read", "auth"))
    assert read["content"] == plan_text
    assert read["status"] == "planning"
    assert len(read["comments"]) == 1

    approved = _ok(_invoke(project_root, "plan", "approve", "auth", "--session", "ses-1"))
    assert len(approved["hash"]) == 64
    assert _ok(_invoke(project_root, "plan", "read", "auth"))["status"] == "approved"

    _ok(_invoke(project_root, "plan", "revoke", "auth"))
    assert _ok(_invoke(project_root, "plan", "read", "auth"))["status"] == "planning"


def test_plan_write_from_stdin(project_root, plan_text):
    _ok(_invoke(project_root, "feature", "create", "auth"))
    _ok(_invoke(project_root, "plan", "write", "auth", input=plan_text))
    assert (project_root / "docs" / "auth" / "plan.md").read_text() == plan_text


def test_plan_write_unreadable_file(project_root, tmp_path):
    _ok(_invoke(project_root, "feature", "create", "auth"))
    error = _error(_invoke(project_root, "plan", "write", "auth", "-f", str(tmp_path / "nope.md")))
    assert error.startswith(f"Cannot read {tmp_path / 'nope.md'}")


def test_task_commands(project_root, plan_file):
    _ok(_invoke(project_root, "feature", "create", "auth"))
    _ok(_invoke(project_root, "plan", "write", "auth", "-f", str(plan_file)))

    synced = _ok(_invoke(project_root, "task", "sync", "auth"))
    assert len(synced["created"]) == 4

    runnable = _ok(_invoke(project_root, "task", "runnable", "auth"))
    assert [t["folder"] for t in runnable["runnable"]] == ["01-setup-database", "03-write-docs"]

    updated = _ok(
        _invoke(
            project_root, "task", "update", "auth", "01-setup-database",
            "--status", "done", "--summary", "schema", "--base-commit", "abc",
        )
    )
    assert updated["completedAt"]
    assert updated["baseCommit"] == "abc"

    blocked = _ok(
        _invoke(
            project_root, "task", "update", "auth", "03-write-docs",
            "--status", "blocked", "--blocker", "needs review", "--blocker-detail", "ask docs team",
        )
    )
    assert blocked["blocker"] == {"reason": "needs review", "detail": "ask docs team"}

    heartbeat = _ok(
        _invoke(
            project_root, "task", "heartbeat", "auth", "02-build-api",
            "--session-id", "w1", "--idempotency-key", "k1",
        )
    )
    assert heartbeat["workerSession"]["sessionId"] == "w1"
    assert heartbeat["workerSession"]["lastHeartbeatAt"].endswith("Z")
    assert heartbeat["idempotencyKey"] == "k1"
    assert heartbeat["status"] == "pending"

    shown = _ok(_invoke(project_root, "task", "show", "auth", "01-setup-database"))
    assert shown["summary"] == "schema"
    listed = _ok(_invoke(project_root, "task", "list", "auth"))
    assert [t["status"] for t in listed["tasks"]] == ["done", "pending", "blocked", "pending"]

    created = _ok(_invoke(project_root, "task", "create", "auth", "Hotfix"))
    assert created == {"ok": True, "folder": "05-hotfix"}


def test_task_update_requires_a_field(project_root):
    result = _invoke(project_root, "task", "update", "auth", "01-a")
    assert result.exit_code == 2
    assert _error(result) == "Nothing to update."


def test_task_show_missing(project_root):
    _ok(_invoke(project_root, "feature", "create", "auth"))
    assert _error(_invoke(project_root, "task", "show", "auth", "01-nope")) == "Task '01-nope' not found"


def test_task_artifacts(project_root, plan_file):
    _ok(_invoke(project_root, "feature", "create", "auth"))
    _ok(_invoke(project_root, "plan", "write", "auth", "-f", str(plan_file)))
    _ok(_invoke(project_root, "task", "sync", "auth"))

    spec = _ok(_invoke(project_root, "task", "artifact", "auth", "01-setup-database", "spec"))
    assert spec["content"].startswith("# Task: 01-setup-database")

    written = _ok(
        _invoke(
            project_root, "task", "artifact", "auth", "01-setup-database", "report",
            "-f", "-", input="# Report",
        )
    )
    assert written["location"].endswith("report.md")
    report = _ok(_invoke(project_root, "task", "artifact", "auth", "01-setup-database", "report"))
    assert report == {"kind": "report", "content": "# Report"}


# ---------------------------------------------------------------------------
# ledger mode
# ---------------------------------------------------------------------------


def test_ledger_flow(project_root, plan_file, fake_br):
    created = _ok(_invoke(project_root, "feature", "create", "auth", mode="on"))
    assert created["epicBeadId"] == "bd-1"
    _ok(_invoke(project_root, "plan", "write", "auth", "-f", str(plan_file), mode="on"))
    _ok(_invoke(project_root, "plan", "approve", "auth", mode="on"))
    synced = _ok(_invoke(project_root, "task", "sync", "auth", mode="on"))
    assert len(synced["created"]) == 4

    _ok(_invoke(project_root, "task", "update", "auth", "01-setup-database", "--status", "in_progress", mode="on"))
    assert fake_br.issue_by_title("Setup database")["status"] == "in_progress"
    assert "approved" in fake_br.issues["bd-1"]["labels"]
    assert not (project_root / "docs").exists()


# ---------------------------------------------------------------------------
# config / doctor
# ---------------------------------------------------------------------------


def test_config_init_and_show(project_root):
    result = _ok(_invoke(project_root, "config", "init", "--beads-mode", "off", mode=None))
    target = project_root / ".beadflow" / "config.toml"
    assert result == {"ok": True, "path": str(target)}
    assert 'beads_mode = "off"' in target.read_text()

    shown = _ok(_invoke(project_root, "config", "show", mode=None))
    assert shown["config"]["beads_mode"] == "off"
    assert shown["project_path"] == str(target)

    error = _error(_invoke(project_root, "config", "init", mode=None))
    assert "already exists" in error


def test_config_init_global(project_root):
    _ok(_invoke(project_root, "config", "init", "--global", mode=None))
    assert paths.GLOBAL_CONFIG_PATH.exists()
    assert 'beads_mode = "on"' in paths.GLOBAL_CONFIG_PATH.read_text()


def test_doctor_file_mode(project_root):
    assert _ok(_invoke(project_root, "doctor")) == {"beads_mode": "off", "ok": True}


def test_doctor_ledger_mode(project_root, fake_br):
    report = _ok(_invoke(project_root, "doctor", mode="on"))
    assert report["br_version"] == "0.4.2"

    fake_br.missing = True
    result = _invoke(project_root, "doctor", mode="on")
    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload["ok"] is False
    assert "br" in payload["error"]
