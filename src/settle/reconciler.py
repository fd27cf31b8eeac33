"""Reconciliation pipeline.

This module glues the pipeline together for the command surface:
1. Load the host inventory and resource declarations
2. Build and validate the dependency graph
3. Load persisted state
4. Plan (apply or destroy) and execute the plan
5. Prune state of resources that are no longer declared
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .config import Config
from .executor import ExecutionResult, Executor
from .graph import ResourceGraph
from .models import HostInventory, HostSpec
from .ping import PingReport, filter_hosts, ping_hosts
from .planner import Plan, Planner
from .progress import ProgressObserver
from .resources import ActionType, build_resources
from .spec_loader import load_hosts, load_resources
from .state import StateStore
from .transport import TransportFactory, ssh_transport_factory

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """Everything loaded for one run."""

    inventory: HostInventory
    graph: ResourceGraph
    state: StateStore

    @property
    def hosts(self) -> list[HostSpec]:
        return self.inventory.hosts


class Reconciler:
    """Runs ping, plan, apply and clean against the configured declarations."""

    def __init__(
        self,
        config: Config,
        transport_factory: TransportFactory | None = None,
        observer: ProgressObserver | None = None,
    ) -> None:
        self._config = config
        self._transport_factory = transport_factory or ssh_transport_factory(
            command_timeout=config.command_timeout_seconds,
            connect_timeout=config.connect_timeout_seconds,
            strict_host_keys=config.strict_host_keys,
        )
        self._observer = observer or ProgressObserver()
        self._cancel_event = asyncio.Event()

    @property
    def config(self) -> Config:
        return self._config

    def shutdown(self) -> None:
        """Cancel the in-flight action and halt the running plan."""
        logger.info("Shutdown requested")
        self._cancel_event.set()

    def load_inventory(self) -> HostInventory:
        return load_hosts(self._config.hosts_file)

    def load(self) -> Workspace:
        """Load declarations, build the validated graph and load state.

        Raises:
            SpecLoadError: If a declaration file is invalid.
            DependencyError: If the graph is invalid.
            PersistenceError: If the state file is unreadable.
        """
        inventory = self.load_inventory()
        document = load_resources(self._config.resources_dir, self._config.hosts_file)

        graph = ResourceGraph()
        for resource in build_resources(document, inventory):
            graph.add_resource(resource)
        graph.validate_dependencies()

        state = StateStore(self._config.state_file, graph)
        state.load_state()

        logger.info(
            "Workspace loaded",
            extra={
                "host_count": len(inventory.hosts),
                "resource_count": len(graph),
                "state_entries": len(state),
            },
        )
        return Workspace(inventory=inventory, graph=graph, state=state)

    def plan(self, workspace: Workspace | None = None) -> Plan:
        workspace = workspace or self.load()
        self._observer.task("plan", resource_count=len(workspace.graph))
        return Planner(workspace.graph, workspace.state).plan()

    def _executor(self, workspace: Workspace) -> Executor:
        return Executor(
            workspace.state,
            self._transport_factory,
            hosts=workspace.hosts,
            observer=self._observer,
        )

    async def apply(self, workspace: Workspace | None = None) -> ExecutionResult:
        """Plan and execute; prune undeclared state after a successful run."""
        workspace = workspace or self.load()
        plan = self.plan(workspace)

        self._observer.task("apply", **plan.summary())
        result = await self._executor(workspace).execute(plan, self._cancel_event)

        if result.success and self._config.prune_state:
            workspace.state.cleanup()
        return result

    async def clean(self, workspace: Workspace | None = None) -> ExecutionResult:
        """Destroy every declared resource.

        State of each destroyed resource is dropped so a later apply
        recreates it.
        """
        workspace = workspace or self.load()
        plan = Planner(workspace.graph, workspace.state).plan_destroy()

        self._observer.task("clean", resource_count=len(plan))
        result = await self._executor(workspace).execute(plan, self._cancel_event)

        destroyed = [
            outcome.action.resource_id
            for outcome in result.actions
            if outcome.success and outcome.action.type == ActionType.DELETE
        ]
        for resource_id in destroyed:
            workspace.state.remove_state(resource_id)
        if destroyed:
            workspace.state.save_state()
        return result

    async def ping(self, name: str | None = None, group: str | None = None) -> PingReport:
        hosts = filter_hosts(self.load_inventory().hosts, name=name, group=group)
        return await ping_hosts(hosts, self._transport_factory, self._observer)
