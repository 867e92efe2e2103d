"""Configuration loaded from global then project ``config.toml``.

Global ``~/.config/beadflow/config.toml`` (or ``$BEADFLOW_CONFIG_DIR``),
project ``<root>/.beadflow/config.toml``::

    beads_mode = "on"
    workflow_gates = "warn"

    [sync]
    auto_import = false
    auto_flush = true

    [lock]
    timeout_ms = 5000
    retry_interval_ms = 50
    stale_ttl_ms = 30000

Project keys override global keys; ``BEADFLOW_BEADS_MODE`` overrides both.
``workflow_gates`` is ``enforce`` (plan gates reject) or ``warn`` (they log).
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any

from beadflow import paths
from beadflow.fileio import LockOptions
from beadflow.models import BeadsMode
from beadflow.plan_gates import GATES_MODES, GatesMode
from beadflow.repository import SyncPolicy

log = logging.getLogger(__name__)

BEADS_MODE_ENV = "BEADFLOW_BEADS_MODE"
DEFAULT_BEADS_MODE: BeadsMode = "on"
DEFAULT_WORKFLOW_GATES: GatesMode = "warn"

_CONFIG_TEMPLATE = Template(
    """beads_mode = "${beads_mode}"
workflow_gates = "${workflow_gates}"

[sync]
auto_import = ${auto_import}
auto_flush = ${auto_flush}

[lock]
timeout_ms = ${timeout_ms}
retry_interval_ms = ${retry_interval_ms}
stale_ttl_ms = ${stale_ttl_ms}
"""
)


@dataclass
class BeadflowConfig:
    beads_mode: BeadsMode = DEFAULT_BEADS_MODE
    workflow_gates: GatesMode = DEFAULT_WORKFLOW_GATES
    sync: SyncPolicy = field(default_factory=SyncPolicy)
    lock: LockOptions = field(default_factory=LockOptions)


def normalize_beads_mode(value: Any) -> BeadsMode | None:
    """Map ``on``/``off``/``true``/``false`` (or a bool) to a mode, else None."""
    if isinstance(value, bool):
        return "on" if value else "off"
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("on", "true"):
            return "on"
        if lowered in ("off", "false"):
            return "off"
    return None


def global_config_path() -> Path:
    return paths.GLOBAL_CONFIG_PATH


def project_config_path(project_root: str | Path) -> Path:
    return Path(project_root) / paths.PROJECT_CONFIG_DIR / "config.toml"


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file; a missing or broken file reads as empty."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _bool(section: dict[str, Any], key: str, default: bool) -> bool:
    value = section.get(key, default)
    if isinstance(value, bool):
        return value
    log.warning("Ignoring non-boolean config value %s=%r", key, value)
    return default


def _positive_int(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    log.warning("Ignoring invalid config value %s=%r", key, value)
    return default


def load_config(project_root: str | Path | None = None) -> BeadflowConfig:
    raw = _read_toml_file(global_config_path())
    if project_root is not None:
        raw = _merge(raw, _read_toml_file(project_config_path(project_root)))

    beads_mode = DEFAULT_BEADS_MODE
    candidates = (
        ("config", raw.get("beads_mode")),
        (BEADS_MODE_ENV, os.environ.get(BEADS_MODE_ENV)),
    )
    for source, value in candidates:
        if value is None:
            continue
        normalized = normalize_beads_mode(value)
        if normalized is None:
            log.warning("Ignoring invalid beads_mode %r from %s", value, source)
        else:
            beads_mode = normalized

    workflow_gates = raw.get("workflow_gates", DEFAULT_WORKFLOW_GATES)
    if workflow_gates not in GATES_MODES:
        log.warning("Ignoring invalid workflow_gates %r", workflow_gates)
        workflow_gates = DEFAULT_WORKFLOW_GATES

    sync = raw.get("sync") if isinstance(raw.get("sync"), dict) else {}
    lock = raw.get("lock") if isinstance(raw.get("lock"), dict) else {}
    defaults = LockOptions()
    return BeadflowConfig(
        beads_mode=beads_mode,
        workflow_gates=workflow_gates,
        sync=SyncPolicy(
            auto_import=_bool(sync, "auto_import", False),
            auto_flush=_bool(sync, "auto_flush", True),
        ),
        lock=LockOptions(
            timeout_ms=_positive_int(lock, "timeout_ms", defaults.timeout_ms),
            retry_interval_ms=_positive_int(lock, "retry_interval_ms", defaults.retry_interval_ms),
            stale_ttl_ms=_positive_int(lock, "stale_ttl_ms", defaults.stale_ttl_ms),
        ),
    )


def render_config(config: BeadflowConfig) -> str:
    """TOML text for *config*, suitable for ``beadflow config init``."""
    return _CONFIG_TEMPLATE.substitute(
        beads_mode=config.beads_mode,
        workflow_gates=config.workflow_gates,
        auto_import=str(config.sync.auto_import).lower(),
        auto_flush=str(config.sync.auto_flush).lower(),
        timeout_ms=config.lock.timeout_ms,
        retry_interval_ms=config.lock.retry_interval_ms,
        stale_ttl_ms=config.lock.stale_ttl_ms,
    )


def config_as_dict(config: BeadflowConfig) -> dict[str, Any]:
    return {
        "beads_mode": config.beads_mode,
        "workflow_gates": config.workflow_gates,
        "sync": {"auto_import": config.sync.auto_import, "auto_flush": config.sync.auto_flush},
        "lock": {
            "timeout_ms": config.lock.timeout_ms,
            "retry_interval_ms": config.lock.retry_interval_ms,
            "stale_ttl_ms": config.lock.stale_ttl_ms,
        },
    }
