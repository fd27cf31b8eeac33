"""Plan computation.

The planner walks the dependency graph in topological order and derives one
action per resource from the state store:

| State entry      | Drift | Action  | Reason                       |
|------------------|-------|---------|------------------------------|
| missing          | -     | create  | resource not in state        |
| present          | yes   | update  | configuration drift detected |
| present          | no    | no_op   | resource up to date          |
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .graph import ResourceGraph
from .resources import Action, ActionType
from .state import StateStore

logger = logging.getLogger(__name__)

REASON_NOT_IN_STATE = "resource not in state"
REASON_DRIFT = "configuration drift detected"
REASON_UP_TO_DATE = "resource up to date"
REASON_CLEANUP = "cleanup requested"


@dataclass
class Plan:
    """Ordered actions computed against one graph."""

    graph: ResourceGraph
    actions: list[Action] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __len__(self) -> int:
        return len(self.actions)

    def validate_plan(self) -> None:
        """Re-check acyclicity and layer ordering of the graph.

        Raises:
            DependencyError: If the graph is no longer valid.
        """
        self.graph.validate_dependencies()

    def action_count(self, action_type: ActionType) -> int:
        return sum(1 for a in self.actions if a.type == action_type)

    def actions_by_type(self, action_type: ActionType) -> list[Action]:
        return [a for a in self.actions if a.type == action_type]

    def summary(self) -> dict[str, int]:
        counts = Counter(a.type for a in self.actions)
        return {t.value: counts.get(t, 0) for t in ActionType}

    @property
    def has_changes(self) -> bool:
        return any(a.type != ActionType.NO_OP for a in self.actions)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the plan output file."""
        resources: dict[str, Any] = {}
        for action in self.actions:
            resource = self.graph.get_resource(action.resource_id)
            if resource is None:
                continue
            resources[action.resource_id] = {
                "type": resource.type,
                "layer": resource.layer.label,
                "config": resource.config,
                "action": action.type.value,
                "reason": action.reason,
            }

        return {
            "created_at": self.created_at.isoformat(),
            "summary": self.summary(),
            "actions": [a.to_dict() for a in self.actions],
            "resources": resources,
        }


class Planner:
    """Computes apply and destroy plans."""

    def __init__(self, graph: ResourceGraph, state: StateStore) -> None:
        self.graph = graph
        self.state = state

    def plan(self) -> Plan:
        """Compute the apply plan.

        Raises:
            CycleError: If the graph has a required-edge cycle.
            DriftDetectionError: If a configuration cannot be compared.
        """
        plan = Plan(graph=self.graph)

        for resource_id in self.graph.topological_sort():
            resource = self.graph.get_resource(resource_id)
            assert resource is not None

            if self.state.get_state(resource_id) is None:
                action_type, reason = ActionType.CREATE, REASON_NOT_IN_STATE
            elif self.state.detect_drift(resource):
                action_type, reason = ActionType.UPDATE, REASON_DRIFT
            else:
                action_type, reason = ActionType.NO_OP, REASON_UP_TO_DATE

            plan.actions.append(
                Action(resource_id=resource_id, type=action_type, metadata={"reason": reason})
            )

        logger.info("Plan computed", extra={"summary": plan.summary()})
        return plan

    def plan_destroy(self) -> Plan:
        """Compute a plan deleting every resource in the graph.

        Raises:
            CycleError: If the graph has a required-edge cycle.
        """
        plan = Plan(graph=self.graph)
        for resource_id in self.graph.topological_sort():
            plan.actions.append(
                Action(
                    resource_id=resource_id,
                    type=ActionType.DELETE,
                    metadata={"reason": REASON_CLEANUP},
                )
            )

        logger.info("Destroy plan computed", extra={"summary": plan.summary()})
        return plan
