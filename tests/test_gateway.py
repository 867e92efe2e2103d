"""BeadGateway: argv construction, preflight, recovery and error hygiene."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from beadflow.gateway import BeadGateway, BeadGatewayError, extract_bead_content


def _initialized(root: Path) -> Path:
    db = root / ".beads" / "beads.db"
    db.parent.mkdir(parents=True, exist_ok=True)
    db.touch()
    return root


def _completed(stdout: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(["br"], 0, stdout=stdout, stderr="")


# -- preflight --


def test_preflight_runs_version_and_init_once(project_root, fake_br):
    gateway = BeadGateway(project_root)
    gateway.create_epic("auth", 3)
    gateway.close_bead("bd-1")

    assert fake_br.calls[0] == ["--version"]
    assert fake_br.calls[1] == ["init"]
    assert len(fake_br.commands("--version")) == 1
    assert len(fake_br.commands("init")) == 1
    assert (project_root / ".beads" / "beads.db").exists()


def test_preflight_skips_init_when_database_exists(project_root, fake_br):
    _initialized(project_root)
    BeadGateway(project_root).create_epic("auth", 3)
    assert fake_br.commands("init") == []


def test_preflight_is_per_instance(project_root, fake_br):
    _initialized(project_root)
    BeadGateway(project_root).flush_artifacts()
    BeadGateway(project_root).flush_artifacts()
    assert len(fake_br.commands("--version")) == 2


def test_already_initialized_init_is_benign(project_root, fake_br):
    fake_br.fail_on["init"] = ("Error: beads already initialized here", "")
    assert BeadGateway(project_root).create_epic("auth", 3) == "bd-1"


def test_init_failure_hides_raw_output(project_root, fake_br):
    fake_br.fail_on["init"] = ("EACCES /secret/path", "")
    with pytest.raises(BeadGatewayError) as exc_info:
        BeadGateway(project_root).create_epic("auth", 3)
    err = exc_info.value
    assert err.code == "command_error"
    assert err.internal_code == "BR_INIT_FAILED"
    assert str(err) == "Failed to initialize beads repository [BR_INIT_FAILED]"


def test_missing_executable(project_root, fake_br):
    fake_br.missing = True
    with pytest.raises(BeadGatewayError) as exc_info:
        BeadGateway(project_root).check_available()
    assert exc_info.value.code == "br_not_found"
    assert exc_info.value.internal_code == "BR_NOT_FOUND"
    assert "Install beads_rust" in str(exc_info.value)


@pytest.mark.parametrize(
    "failure",
    [
        subprocess.CalledProcessError(101, ["br", "--version"], output="", stderr="panic at /secret"),
        subprocess.TimeoutExpired(["br", "--version"], 30),
    ],
)
def test_failing_executable_is_not_reported_as_missing(project_root, failure):
    with patch("beadflow.gateway.subprocess.run", side_effect=failure):
        with pytest.raises(BeadGatewayError) as exc_info:
            BeadGateway(project_root).check_available()
    err = exc_info.value
    assert err.code == "command_error"
    assert err.internal_code == "BR_UNUSABLE"
    assert "Install beads_rust" not in str(err)
    assert "/secret" not in str(err)


def test_check_available_returns_version(project_root, fake_br):
    assert BeadGateway(project_root).check_available() == "0.4.2"


# -- priority --


@pytest.mark.parametrize("priority", [0, 6, 2.5, True, "3"])
def test_invalid_priority_fails_before_any_subprocess(project_root, fake_br, priority):
    with pytest.raises(BeadGatewayError) as exc_info:
        BeadGateway(project_root).create_epic("auth", priority)
    assert exc_info.value.code == "invalid_priority"
    assert "1->0, 2->1, 3->2, 4->3, 5->4" in str(exc_info.value)
    assert fake_br.calls == []


def test_priority_is_shifted_to_ledger_scale(project_root, fake_br):
    _initialized(project_root)
    gateway = BeadGateway(project_root)
    epic = gateway.create_epic("auth", 1)
    gateway.create_task("Setup", epic, 5)
    assert fake_br.commands("create") == [
        ["create", "auth", "-t", "epic", "-p", "0", "--json"],
        ["create", "Setup", "-t", "task", "--parent", "bd-1", "-p", "4", "--json"],
    ]


# -- not-initialized recovery --


def test_not_initialized_is_recovered_with_one_retry(project_root, fake_br):
    _initialized(project_root)
    fake_br.fail_on["list"] = ("Error: database not initialized", "")
    assert BeadGateway(project_root).list(type="epic") == []
    assert len(fake_br.commands("init")) == 1
    assert len(fake_br.commands("list")) == 2


def test_repeated_not_initialized_raises(project_root, fake_br):
    _initialized(project_root)
    fake_br.fail_on["list"] = ("", json.dumps({"error": {"code": "NOT_INITIALIZED"}}))
    fake_br.fail_times["list"] = 2
    with pytest.raises(BeadGatewayError) as exc_info:
        BeadGateway(project_root).list()
    assert exc_info.value.internal_code == "BR_NOT_INITIALIZED"
    assert str(exc_info.value) == (
        "Failed to list beads: beads repository initialization failed [BR_NOT_INITIALIZED]"
    )
    assert len(fake_br.commands("list")) == 2


def test_reinit_failure_does_not_retry(project_root, fake_br):
    _initialized(project_root)
    fake_br.fail_on["list"] = ("NOT_INITIALIZED", "")
    fake_br.fail_on["init"] = ("boom", "")
    with pytest.raises(BeadGatewayError) as exc_info:
        BeadGateway(project_root).list()
    assert exc_info.value.internal_code == "BR_INIT_FAILED"
    assert len(fake_br.commands("list")) == 1


def test_not_initialized_payload_on_success_exit(project_root):
    _initialized(project_root)
    payload = json.dumps({"error": {"code": "NOT_INITIALIZED"}})
    outputs = iter(["br 1.0", payload, "Initialized", "[]"])
    with patch("beadflow.gateway.subprocess.run", side_effect=lambda *a, **k: _completed(next(outputs))) as run:
        assert BeadGateway(project_root).list() == []
    assert [c.args[0][1] for c in run.call_args_list] == ["--version", "list", "init", "list"]


# -- command failures --


def test_command_failure_message_names_operation_not_output(project_root, fake_br):
    _initialized(project_root)
    fake_br.fail_on["close"] = ("secret stderr detail", "secret stdout")
    with pytest.raises(BeadGatewayError) as exc_info:
        BeadGateway(project_root).close_bead("bd-9")
    assert str(exc_info.value) == "Failed to close bead 'bd-9' [BR_COMMAND_FAILED]"
    assert exc_info.value.__cause__ is None


def test_timeout_names_operation(project_root):
    _initialized(project_root)

    def run(argv, **kwargs):
        if argv[1] == "--version":
            return _completed("br 1.0")
        raise subprocess.TimeoutExpired(argv, kwargs["timeout"])

    with patch("beadflow.gateway.subprocess.run", side_effect=run):
        with pytest.raises(BeadGatewayError, match="flush bead artifacts to disk: timed out after 2s"):
            BeadGateway(project_root, timeout=2).flush_artifacts()


def test_subprocess_is_run_without_stdin_and_with_timeout(project_root):
    _initialized(project_root)
    with patch("beadflow.gateway.subprocess.run", return_value=_completed("br 1.0")) as run:
        BeadGateway(project_root, executable="/opt/br", timeout=7).check_available()
    kwargs = run.call_args.kwargs
    assert run.call_args.args[0] == ["/opt/br", "--version"]
    assert kwargs["cwd"] == project_root
    assert kwargs["stdin"] == subprocess.DEVNULL
    assert kwargs["timeout"] == 7
    assert kwargs["check"] is True


def test_parse_errors(project_root):
    _initialized(project_root)
    outputs = iter(["br 1.0", "not json", "{}"])
    with patch("beadflow.gateway.subprocess.run", side_effect=lambda *a, **k: _completed(next(outputs))):
        gateway = BeadGateway(project_root)
        with pytest.raises(BeadGatewayError) as parse_error:
            gateway.create_epic("a", 3)
        with pytest.raises(BeadGatewayError) as missing:
            gateway.create_epic("b", 3)
    assert parse_error.value.code == "parse_error"
    assert missing.value.code == "missing_field"


# -- operations --


def test_sync_task_status_actions(project_root, fake_br):
    _initialized(project_root)
    gateway = BeadGateway(project_root)
    bead = gateway.create_epic("auth", 3)

    gateway.sync_task_status(bead, "in_progress")
    assert fake_br.issues[bead]["status"] == "in_progress"
    gateway.sync_task_status(bead, "failed")
    assert fake_br.issues[bead]["status"] == "deferred"
    assert fake_br.issues[bead]["labels"] == ["failed"]
    gateway.sync_task_status(bead, "pending")
    assert fake_br.issues[bead]["status"] == "open"
    gateway.sync_task_status(bead, "done")
    assert fake_br.issues[bead]["status"] == "closed"


def test_list_filters_and_children(project_root, fake_br):
    _initialized(project_root)
    gateway = BeadGateway(project_root)
    epic = gateway.create_epic("auth", 3)
    done = gateway.create_epic("old", 3)
    gateway.close_bead(done)
    gateway.create_task("Setup", epic, 3)

    assert [e["title"] for e in gateway.list(type="epic")] == ["auth"]
    assert [e["title"] for e in gateway.list(type="epic", status="all")] == ["auth", "old"]
    assert [e["title"] for e in gateway.list(type="epic", status="closed")] == ["old"]
    children = gateway.list(type="task", parent=epic)
    assert children == [{"id": "bd-3", "title": "Setup", "status": "open", "type": "task"}]


def test_list_accepts_wrapped_payloads(project_root):
    _initialized(project_root)
    payload = json.dumps({"issues": [{"id": "x-1", "title": "T", "status": "open", "type": "epic"}, {"title": "no id"}]})
    outputs = iter(["br 1.0", payload])
    with patch("beadflow.gateway.subprocess.run", side_effect=lambda *a, **k: _completed(next(outputs))):
        assert BeadGateway(project_root).list(type="epic") == [
            {"id": "x-1", "title": "T", "status": "open", "type": "epic"}
        ]


def test_upsert_and_read_artifact_keep_description(project_root, fake_br):
    _initialized(project_root)
    gateway = BeadGateway(project_root)
    bead = gateway.create_epic("auth", 3)
    gateway.update_description(bead, "Human notes")
    gateway.upsert_artifact(bead, "report", "r")
    gateway.upsert_artifact(bead, "task_state", "{}")

    assert gateway.read_artifact(bead, "report") == "r"
    assert gateway.read_artifact(bead, "spec") == "Human notes"
    assert fake_br.issues[bead]["description"].startswith("Human notes\n\n")


def test_show_unwraps_single_element_list(project_root, fake_br):
    _initialized(project_root)
    gateway = BeadGateway(project_root)
    bead = gateway.create_epic("auth", 3)
    assert gateway.show(bead)["title"] == "auth"


def test_comments_and_labels(project_root, fake_br):
    _initialized(project_root)
    gateway = BeadGateway(project_root)
    bead = gateway.create_epic("auth", 3)
    gateway.add_comment(bead, "[me] Line 1: hi")
    gateway.add_label(bead, "approved")
    assert fake_br.comments[bead] == ["[me] Line 1: hi"]
    assert fake_br.issues[bead]["labels"] == ["approved"]


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"description": "d"}, "d"),
        ({"description": "  ", "body": "b"}, "b"),
        ({"issue": {"content": "nested"}}, "nested"),
        ([{"title": "x"}, {"description": "second"}], "second"),
        ({"data": {"items": [{"description": "deep"}]}}, "deep"),
        ({"title": "none"}, None),
        ("", None),
    ],
)
def test_extract_bead_content(payload, expected):
    assert extract_bead_content(payload) == expected
