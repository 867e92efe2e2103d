"""Subprocess gateway to the ``br`` ledger CLI.

Every ledger interaction in beadflow goes through ``BeadGateway``. Methods
raise ``BeadGatewayError`` on failure; raw CLI output is logged at DEBUG and
never copied into error messages.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Any

from beadflow import artifacts as codec
from beadflow.mapping import task_ledger_actions
from beadflow.models import LedgerIssue
from beadflow.paths import LEDGER_DB_PATH

log = logging.getLogger(__name__)

INSTALL_HINT = "Install beads_rust from https://github.com/Dicklesworthstone/beads_rust"

_VERSION_RE = re.compile(r"[\d.]+")
_LIST_KEYS = ("issues", "results", "items", "data")
_DEPENDENCY_KEYS = ("dependencies", "results", "items", "data")
_EMBEDDED_ISSUE_KEYS = ("issue", "dependent", "target", "child", "to")
_CONTENT_KEYS = ("description", "body", "content")
_NESTED_KEYS = ("issue", "issues", "result", "results", "item", "items", "data")


class BeadGatewayError(Exception):
    """Ledger CLI failure.

    ``code`` is one of ``br_not_found``, ``command_error``, ``parse_error``,
    ``missing_field`` or ``invalid_priority``. ``internal_code`` is the
    upper-case tag that also appears in the message.
    """

    def __init__(self, code: str, message: str, internal_code: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.internal_code = internal_code


def _error_code(payload: str | None) -> str | None:
    """Return ``error.code`` from a JSON error payload, if *payload* is one."""
    if not payload:
        return None
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    error = parsed.get("error")
    if isinstance(error, dict) and isinstance(error.get("code"), str):
        return error["code"]
    return None


def _says_not_initialized(*outputs: str | None) -> bool:
    for output in outputs:
        if not output:
            continue
        if _error_code(output) == "NOT_INITIALIZED":
            return True
        if "NOT_INITIALIZED" in output or "not initialized" in output.lower():
            return True
    return False


def _says_already_initialized(*outputs: str | None) -> bool:
    for output in outputs:
        if not output:
            continue
        if _error_code(output) == "ALREADY_INITIALIZED":
            return True
        if "already initialized" in output.lower():
            return True
    return False


def extract_bead_content(payload: Any) -> str | None:
    """Find the description text inside whatever shape ``br show`` returned."""
    if isinstance(payload, str):
        return payload if payload.strip() else None
    if isinstance(payload, list):
        for item in payload:
            content = extract_bead_content(item)
            if content:
                return content
        return None
    if not isinstance(payload, dict):
        return None
    for key in _CONTENT_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    for key in _NESTED_KEYS:
        if key in payload:
            content = extract_bead_content(payload[key])
            if content:
                return content
    return None


def _parse_list_items(payload: Any) -> list[LedgerIssue]:
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = next((payload[k] for k in _LIST_KEYS if isinstance(payload.get(k), list)), [])
    else:
        items = []

    issues: list[LedgerIssue] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        issue: LedgerIssue = {
            "id": str(item["id"]),
            "title": str(item.get("title") or ""),
            "status": str(item.get("status") or ""),
        }
        kind = item.get("issue_type") or item.get("type")
        if kind:
            issue["type"] = str(kind)
        issues.append(issue)
    return issues


def _parse_dependent_issues(payload: Any, type_hint: str | None) -> list[LedgerIssue]:
    if isinstance(payload, list):
        dependencies = payload
    elif isinstance(payload, dict):
        dependencies = next(
            (payload[k] for k in _DEPENDENCY_KEYS if isinstance(payload.get(k), list)), []
        )
    else:
        dependencies = []

    children: dict[str, LedgerIssue] = {}
    for dep in dependencies:
        if not isinstance(dep, dict):
            continue
        relation = dep.get("type")
        if relation and relation != "parent-child":
            continue
        embedded = next(
            (dep[k] for k in _EMBEDDED_ISSUE_KEYS if isinstance(dep.get(k), dict)), None
        )
        issue = embedded if embedded is not None else dep
        issue_id = str(issue.get("id") or issue.get("issue_id") or "")
        if not issue_id:
            continue
        child: LedgerIssue = {
            "id": issue_id,
            "title": str(issue.get("title") or dep.get("title") or ""),
            "status": str(issue.get("status") or dep.get("status") or ""),
        }
        kind = (issue.get("issue_type") or issue.get("type")) if embedded is not None else type_hint
        if kind:
            child["type"] = str(kind)
        children[issue_id] = child
    return list(children.values())


class BeadGateway:
    """Runs ``br`` in *project_root* with a bounded timeout and no stdin."""

    def __init__(
        self, project_root: str | Path, executable: str = "br", timeout: float = 30.0
    ) -> None:
        self.project_root = Path(project_root)
        self.executable = executable
        self.timeout = timeout
        self._preflight_done = False

    # -- process plumbing --

    def _exec(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        argv = [self.executable, *args]
        log.debug("Running %s", argv)
        return subprocess.run(
            argv,
            cwd=self.project_root,
            capture_output=True,
            text=True,
            check=True,
            timeout=self.timeout,
            stdin=subprocess.DEVNULL,
        )

    def check_available(self) -> str:
        """Return the ledger CLI version.

        Raises ``br_not_found`` when the executable cannot be started and
        ``command_error`` (``BR_UNUSABLE``) when ``br --version`` fails.
        """
        try:
            output = self._exec(["--version"]).stdout.strip()
        except OSError as e:
            raise BeadGatewayError(
                "br_not_found",
                f"br CLI not found: {type(e).__name__}. {INSTALL_HINT}",
                internal_code="BR_NOT_FOUND",
            ) from None
        except subprocess.SubprocessError as e:
            log.debug("br --version failed: %s", e)
            raise BeadGatewayError(
                "command_error",
                f"br CLI is installed but not usable: {type(e).__name__} [BR_UNUSABLE]",
                internal_code="BR_UNUSABLE",
            ) from None
        match = _VERSION_RE.search(output)
        return match.group(0) if match else output

    def _init_failed(self) -> BeadGatewayError:
        return BeadGatewayError(
            "command_error",
            "Failed to initialize beads repository [BR_INIT_FAILED]",
            internal_code="BR_INIT_FAILED",
        )

    def _init_repository(self) -> None:
        try:
            result = self._exec(["init"])
        except subprocess.CalledProcessError as e:
            log.debug("br init failed: stderr=%r stdout=%r", e.stderr, e.stdout)
            if _says_already_initialized(e.stderr, e.stdout):
                return
            raise self._init_failed() from None
        except (OSError, subprocess.SubprocessError) as e:
            log.debug("br init failed: %s", e)
            raise self._init_failed() from None
        code = _error_code(result.stdout)
        if code and code != "ALREADY_INITIALIZED":
            log.debug("br init returned error payload: %r", result.stdout)
            raise self._init_failed()

    def _ensure_preflight(self) -> None:
        if self._preflight_done:
            return
        self.check_available()
        if not (self.project_root / LEDGER_DB_PATH).exists():
            self._init_repository()
        self._preflight_done = True

    def _run(self, args: list[str], operation: str, *, retried: bool = False) -> str:
        self._ensure_preflight()
        try:
            result = self._exec(args)
        except subprocess.CalledProcessError as e:
            log.debug("br %s failed: stderr=%r stdout=%r", args[0], e.stderr, e.stdout)
            if _says_not_initialized(e.stderr, e.stdout):
                return self._recover_not_initialized(args, operation, retried)
            raise BeadGatewayError(
                "command_error",
                f"Failed to {operation} [BR_COMMAND_FAILED]",
                internal_code="BR_COMMAND_FAILED",
            ) from None
        except subprocess.TimeoutExpired:
            raise BeadGatewayError(
                "command_error",
                f"Failed to {operation}: timed out after {self.timeout:g}s [BR_COMMAND_FAILED]",
                internal_code="BR_COMMAND_FAILED",
            ) from None
        except OSError as e:
            raise BeadGatewayError(
                "command_error",
                f"Failed to {operation}: {type(e).__name__} [BR_COMMAND_FAILED]",
                internal_code="BR_COMMAND_FAILED",
            ) from None

        if _error_code(result.stdout) == "NOT_INITIALIZED":
            log.debug("br %s reported NOT_INITIALIZED: %r", args[0], result.stdout)
            return self._recover_not_initialized(args, operation, retried)
        return result.stdout

    def _recover_not_initialized(self, args: list[str], operation: str, retried: bool) -> str:
        if retried:
            raise BeadGatewayError(
                "command_error",
                f"Failed to {operation}: beads repository initialization failed [BR_NOT_INITIALIZED]",
                internal_code="BR_NOT_INITIALIZED",
            )
        log.info("Ledger reports it is not initialized; running br init and retrying")
        self._init_repository()
        return self._run(args, operation, retried=True)

    def _parse_json(self, output: str, target: str) -> Any:
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise BeadGatewayError(
                "parse_error",
                f"Failed to parse {target}: {e.msg} [BR_PARSE_FAILED]",
                internal_code="BR_PARSE_FAILED",
            ) from None

    def _parse_id(self, output: str, target: str) -> str:
        parsed = self._parse_json(output, target)
        bead_id = parsed.get("id") if isinstance(parsed, dict) else None
        if not bead_id:
            raise BeadGatewayError(
                "missing_field",
                f"Failed to parse {target}: missing id in br output [BR_PARSE_FAILED]",
                internal_code="BR_PARSE_FAILED",
            )
        return str(bead_id)

    @staticmethod
    def validate_priority(priority: object) -> int:
        if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 5:
            raise BeadGatewayError(
                "invalid_priority",
                f"Priority must be an integer between 1 and 5 (inclusive), got: {priority}. "
                "Mapping to br priority is 1->0, 2->1, 3->2, 4->3, 5->4.",
            )
        return priority

    # -- operations --

    def create_epic(self, name: str, priority: int) -> str:
        self.validate_priority(priority)
        output = self._run(
            ["create", name, "-t", "epic", "-p", str(priority - 1), "--json"],
            f"create epic bead for '{name}'",
        )
        return self._parse_id(output, f"epic bead for feature '{name}'")

    def create_task(self, title: str, epic_id: str, priority: int) -> str:
        self.validate_priority(priority)
        output = self._run(
            ["create", title, "-t", "task", "--parent", epic_id, "-p", str(priority - 1), "--json"],
            f"create child bead '{title}' under epic '{epic_id}'",
        )
        return self._parse_id(output, f"child bead for task '{title}'")

    def sync_task_status(self, bead_id: str, status: str) -> None:
        for action in task_ledger_actions(status):
            if action.type == "close":
                self._run(["close", bead_id], f"close bead '{bead_id}'")
            elif action.type == "claim":
                self._run(["update", bead_id, "--claim"], f"claim bead '{bead_id}'")
            elif action.type == "unclaim":
                self._run(["update", bead_id, "--unclaim"], f"unclaim bead '{bead_id}'")
            else:
                self._run(["update", bead_id, "-s", "deferred"], f"mark bead '{bead_id}' deferred")
                self.add_label(bead_id, action.label or status)

    def close_bead(self, bead_id: str) -> None:
        self._run(["close", bead_id], f"close bead '{bead_id}'")

    def flush_artifacts(self) -> None:
        self._run(["sync", "--flush-only"], "flush bead artifacts to disk")

    def import_artifacts(self) -> None:
        self._run(["sync", "--import-only"], "import bead artifacts from disk")

    def add_label(self, bead_id: str, label: str) -> None:
        self._run(
            ["update", bead_id, "--add-label", label], f"add label '{label}' to bead '{bead_id}'"
        )

    def add_comment(self, bead_id: str, comment: str) -> None:
        self._run(["comments", "add", bead_id, comment], f"add comment to bead '{bead_id}'")

    def show(self, bead_id: str) -> Any:
        output = self._run(["show", bead_id, "--json"], f"show bead '{bead_id}'")
        parsed = self._parse_json(output, f"bead data for '{bead_id}'")
        # br show --json wraps the issue in a single-element list.
        if isinstance(parsed, list) and len(parsed) == 1:
            return parsed[0]
        return parsed

    def read_description(self, bead_id: str) -> str | None:
        return extract_bead_content(self.show(bead_id))

    def list(
        self,
        type: str | None = None,
        parent: str | None = None,
        status: str | None = None,
    ) -> list[LedgerIssue]:
        """List issues, or the children of *parent* when given.

        *status* is ``open``, ``closed`` or ``all``; by default the CLI shows
        open issues only.
        """
        if parent:
            args = ["dep", "list", parent, "--direction", "up", "--json"]
            operation = f"list child beads under '{parent}'"
        else:
            args = ["list", "--json"]
            if type:
                args += ["--type", type]
            if status == "all":
                args.append("-a")
            elif status == "closed":
                args += ["-s", "closed"]
            operation = "list beads"

        parsed = self._parse_json(self._run(args, operation), "bead list")
        items = _parse_dependent_issues(parsed, type) if parent else _parse_list_items(parsed)
        return [
            item
            for item in items
            if (not type or item.get("type") == type)
            and (not status or status == "all" or item.get("status") == status)
        ]

    def update_status(self, bead_id: str, status: str) -> None:
        self._run(
            ["update", bead_id, "--status", status],
            f"update status of bead '{bead_id}' to '{status}'",
        )

    def update_description(self, bead_id: str, content: str) -> None:
        self._run(
            ["update", bead_id, "--description", content],
            f"update bead description for '{bead_id}'",
        )

    def upsert_artifact(self, bead_id: str, kind: str, content: str) -> None:
        current = self.read_description(bead_id) or ""
        self.update_description(bead_id, codec.upsert_artifact(current, kind, content))

    def read_artifact(self, bead_id: str, kind: str) -> str | None:
        return codec.read_artifact(self.read_description(bead_id), kind)
