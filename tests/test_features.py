"""FeatureService over both backends."""

from __future__ import annotations

import pytest

from beadflow.paths import InvalidNameError
from beadflow.stores import FeatureExistsError, FeatureNotFoundError, FeatureTransitionError


def test_create_and_get(any_ws):
    feature = any_ws.features.create("auth", ticket="JIRA-42")
    assert feature["name"] == "auth"
    assert feature["status"] == "planning"
    assert feature["ticket"] == "JIRA-42"
    assert feature["createdAt"].endswith("Z")

    loaded = any_ws.features.get("auth")
    assert loaded["epicBeadId"] == feature["epicBeadId"]
    assert loaded["ticket"] == "JIRA-42"
    assert any_ws.features.get("missing") is None


def test_create_rejects_duplicates_and_bad_input(any_ws):
    any_ws.features.create("auth")
    with pytest.raises(FeatureExistsError):
        any_ws.features.create("auth")
    with pytest.raises(InvalidNameError):
        any_ws.features.create(".hidden")
    with pytest.raises(ValueError, match="Priority must be an integer between 1 and 5"):
        any_ws.features.create("billing", priority=0)
    assert any_ws.features.list() == ["auth"]


def test_active_feature_skips_completed(any_ws):
    assert any_ws.features.get_active() is None
    any_ws.features.create("alpha")
    any_ws.features.create("beta")
    any_ws.features.complete("alpha")
    assert any_ws.features.get_active()["name"] == "beta"


def test_update_status_stamps_times(any_ws):
    any_ws.features.create("auth")
    approved = any_ws.features.update_status("auth", "approved")
    assert approved["approvedAt"]
    executing = any_ws.features.update_status("auth", "executing")
    assert executing["approvedAt"] == approved["approvedAt"]
    assert any_ws.features.get("auth")["status"] == "executing"

    with pytest.raises(ValueError, match="Invalid feature status: shipped"):
        any_ws.features.update_status("auth", "shipped")  # type: ignore[arg-type]
    with pytest.raises(FeatureNotFoundError, match="Feature 'ghost' not found"):
        any_ws.features.update_status("ghost", "approved")


def test_complete_twice(any_ws):
    any_ws.features.create("auth")
    completed = any_ws.features.complete("auth")
    assert completed["completedAt"]
    assert any_ws.features.get("auth")["status"] == "completed"
    with pytest.raises(ValueError, match="Feature 'auth' is already completed"):
        any_ws.features.complete("auth")


def test_complete_closes_epic(ledger_ws, fake_br):
    epic = ledger_ws.features.create("auth")["epicBeadId"]
    ledger_ws.features.complete("auth")
    assert fake_br.issues[epic]["status"] == "closed"


def test_info(any_ws, plan_text):
    any_ws.features.create("auth")
    info = any_ws.features.get_info("auth")
    assert info == {"name": "auth", "status": "planning", "tasks": [], "hasPlan": False, "commentCount": 0}

    any_ws.plans.write("auth", plan_text)
    any_ws.tasks.sync("auth")
    info = any_ws.features.get_info("auth")
    assert info["hasPlan"] is True
    assert len(info["tasks"]) == 4
    assert any_ws.features.get_info("ghost") is None


def test_session_and_metadata(any_ws):
    any_ws.features.create("auth")
    assert any_ws.features.get_session("auth") is None
    any_ws.features.set_session("auth", "ses-9")
    assert any_ws.features.get_session("auth") == "ses-9"

    any_ws.features.patch_metadata("auth", {"workflowPath": "lightweight"})
    assert any_ws.features.get("auth")["workflowPath"] == "lightweight"
    assert any_ws.features.get_session("ghost") is None
    with pytest.raises(FeatureNotFoundError):
        any_ws.features.set_session("ghost", "x")


def test_status_never_moves_backwards(any_ws):
    any_ws.features.create("auth")
    any_ws.features.update_status("auth", "executing")
    with pytest.raises(FeatureTransitionError, match="from executing to approved"):
        any_ws.features.update_status("auth", "approved")
    assert any_ws.features.update_status("auth", "executing")["status"] == "executing"


def test_completed_is_final(any_ws):
    any_ws.features.create("auth")
    any_ws.features.complete("auth")
    for status in ("planning", "approved", "executing"):
        with pytest.raises(FeatureTransitionError, match="completed features are final"):
            any_ws.features.update_status("auth", status)
    assert any_ws.features.get("auth")["status"] == "completed"


def test_back_to_planning_only_before_tasks_exist(any_ws, plan_text):
    any_ws.features.create("auth")
    any_ws.features.update_status("auth", "approved")
    assert any_ws.features.update_status("auth", "planning")["status"] == "planning"

    any_ws.plans.write("auth", plan_text)
    any_ws.plans.approve("auth")
    any_ws.tasks.sync("auth")
    with pytest.raises(FeatureTransitionError, match="tasks already exist"):
        any_ws.features.update_status("auth", "planning")
    assert any_ws.features.get("auth")["status"] == "approved"
