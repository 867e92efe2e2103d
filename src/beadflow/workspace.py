"""One project root wired up: config, ledger repository, stores and services."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from beadflow.config import BeadflowConfig, load_config
from beadflow.features import FeatureService
from beadflow.gateway import BeadGateway
from beadflow.plans import PlanService
from beadflow.repository import BeadsRepository
from beadflow.stores import StoreSet, create_stores
from beadflow.tasks import TaskService


@dataclass
class Workspace:
    project_root: Path
    config: BeadflowConfig
    stores: StoreSet
    features: FeatureService
    plans: PlanService
    tasks: TaskService
    repository: BeadsRepository | None = None


def open_workspace(
    project_root: str | Path,
    config: BeadflowConfig | None = None,
    gateway: BeadGateway | None = None,
) -> Workspace:
    """Build every service for *project_root*.

    The ledger repository is only created when the beads mode is on.
    """
    root = Path(project_root)
    config = config or load_config(root)

    repository = None
    if config.beads_mode == "on":
        repository = BeadsRepository(root, config.sync, gateway)

    stores = create_stores(root, config.beads_mode, repository, config.lock)
    tasks = TaskService(root, stores.tasks, config.beads_mode)
    plans = PlanService(
        root,
        stores.plans,
        config.beads_mode,
        feature_store=stores.features,
        task_lister=tasks,
        gates_mode=config.workflow_gates,
    )
    features = FeatureService(root, stores.features, plans, config.beads_mode, tasks)
    return Workspace(
        project_root=root,
        config=config,
        stores=stores,
        features=features,
        plans=plans,
        tasks=tasks,
        repository=repository,
    )
