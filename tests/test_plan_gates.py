"""Workflow-path detection and the discovery/lightweight plan gates."""

from __future__ import annotations

import logging

import pytest

from beadflow.plan_gates import (
    PlanGateError,
    apply_gate,
    count_plan_tasks,
    detect_workflow_path,
    has_mini_record,
    validate_discovery_section,
    validate_lightweight_plan,
)

FINDINGS = "Users hit a 500 on login when the session cookie is missing. " * 3
MINI_RECORD = "Impact: login only. Safety: guarded. Verify: unit test. Rollback: revert.\n"


def _plan(*sections: str) -> str:
    return "# Plan\n\n" + "\n".join(sections)


@pytest.mark.parametrize(
    ("content", "expected"),
    [
        ("Workflow Path: lightweight\n", "lightweight"),
        ("workflow path:   LIGHTWEIGHT  \n", "lightweight"),
        ("## Workflow Path\nsmall fix\n", "lightweight"),
        ("## Lightweight Path\n", "lightweight"),
        ("Workflow Path: standard\n", "standard"),
        ("We considered a lightweight path but chose not to.\n", "standard"),
        ("", "standard"),
    ],
)
def test_detect_workflow_path(content, expected):
    assert detect_workflow_path(content) == expected


def test_count_plan_tasks_only_counts_numbered_task_headings():
    content = _plan("## Tasks", "### 1. Setup", "### Notes", "### 2. Build", "#### 3. Nested")
    assert count_plan_tasks(content) == 2


def test_mini_record_needs_every_field():
    assert has_mini_record(MINI_RECORD)
    assert not has_mini_record("Impact: x. Safety: y. Verify: z.")


def test_lightweight_plan_that_qualifies():
    content = _plan("Workflow Path: lightweight", MINI_RECORD, "### 1. Fix", "### 2. Test")
    assert validate_lightweight_plan(content) == []


def test_lightweight_plan_problems_are_all_reported():
    tasks = [f"### {n}. Step {n}" for n in range(1, 4)]
    issues = validate_lightweight_plan(_plan("Workflow Path: lightweight", *tasks))
    assert issues == [
        "Lightweight path supports max 2 tasks; found 3.",
        "Lightweight plan must include mini-record details for Impact, Safety, Verify and Rollback.",
    ]


def test_lightweight_plan_without_tasks():
    issues = validate_lightweight_plan(_plan("Workflow Path: lightweight", MINI_RECORD))
    assert issues[0].startswith("No tasks found.")


def test_missing_discovery_section():
    issues = validate_discovery_section(_plan("## Tasks", "### 1. Setup"))
    assert len(issues) == 1
    assert issues[0].startswith("A `## Discovery` section is required")


def test_discovery_section_is_measured_up_to_the_next_section():
    content = _plan("## Discovery", "Too short.", "## Tasks", FINDINGS)
    assert validate_discovery_section(content) == [
        "Discovery section is too thin (10 chars, minimum 100)."
    ]
    assert validate_discovery_section(_plan("## Discovery", FINDINGS, "## Tasks")) == []


def test_lightweight_discovery_has_a_lower_minimum():
    body = "Cookie check is missing in login handler."
    content = _plan("Workflow Path: lightweight", "## Discovery", body, MINI_RECORD)
    assert len(body) < 100
    assert validate_discovery_section(content) == []


def test_lightweight_discovery_still_needs_the_mini_record():
    content = _plan("Workflow Path: lightweight", "## Discovery", FINDINGS)
    assert validate_discovery_section(content) == [
        "Lightweight workflow requires a mini-record: Impact, Safety, Verify, Rollback."
    ]


def test_apply_gate_enforce_raises_with_every_issue():
    with pytest.raises(PlanGateError) as exc_info:
        apply_gate(["first", "second"], "enforce", "Plan for feature 'auth'")
    assert exc_info.value.issues == ["first", "second"]
    assert str(exc_info.value) == "Plan gate failed:\n- first\n- second"


def test_apply_gate_warn_logs_each_issue(caplog):
    with caplog.at_level(logging.WARNING, logger="beadflow.plan_gates"):
        apply_gate(["first", "second"], "warn", "Plan for feature 'auth'")
    assert [r.getMessage() for r in caplog.records] == [
        "Plan for feature 'auth': first",
        "Plan for feature 'auth': second",
    ]


def test_apply_gate_without_issues_is_silent(caplog):
    apply_gate([], "enforce", "ctx")
    assert caplog.records == []
