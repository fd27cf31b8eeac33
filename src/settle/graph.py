"""Resource dependency graph.

This module implements ordering and validation over declared resources:
1. Node and edge registration (one node per ResourceID)
2. Topological sorting over required edges (Kahn's algorithm)
3. Cycle detection
4. Layer validation (no required edge may point to a higher layer)

ORDERING:
For every required edge "A depends_on B" the target B is counted, so nodes
that nothing depends on come out first and A precedes B in the result.
Insertion order breaks ties, which keeps the ordering deterministic.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .resources import Dependency, Resource

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when graph validation fails."""

    pass


class ResourceValidationError(DependencyError):
    """Raised when a resource is malformed or a dependency target is missing."""

    pass


class CycleError(DependencyError):
    """Raised when required edges form a cycle."""

    pass


class LayerViolationError(DependencyError):
    """Raised when a required edge points to a higher layer."""

    pass


class ResourceGraph:
    """Directed graph of resources and their dependency edges."""

    def __init__(self) -> None:
        self._nodes: dict[str, Resource] = {}
        self._edges: dict[str, list[Dependency]] = {}

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def add_resource(self, resource: Resource) -> None:
        """Register a resource and its edges, replacing any node with the same id.

        Raises:
            ResourceValidationError: If the resource fails validation.
        """
        resource.validate()
        if resource.id in self._nodes:
            logger.debug("Replacing resource in graph", extra={"resource_id": resource.id})
        self._nodes[resource.id] = resource
        self._edges[resource.id] = list(resource.dependencies)

    def get_resource(self, resource_id: str) -> Resource | None:
        return self._nodes.get(resource_id)

    def resources(self) -> list[Resource]:
        """All resources in insertion order."""
        return list(self._nodes.values())

    all_resources = resources

    def get_dependencies(self, resource_id: str) -> list[Dependency]:
        return list(self._edges.get(resource_id, []))

    def get_dependents(self, resource_id: str) -> list[str]:
        """Ids of resources that declare an edge to resource_id."""
        return [
            node_id
            for node_id, edges in self._edges.items()
            if any(edge.target == resource_id for edge in edges)
        ]

    def remove_resource(self, resource_id: str) -> None:
        """Delete a node, its edges, and every edge that targets it."""
        self._nodes.pop(resource_id, None)
        self._edges.pop(resource_id, None)
        for node_id, edges in self._edges.items():
            kept = [edge for edge in edges if edge.target != resource_id]
            if len(kept) != len(edges):
                self._edges[node_id] = kept
                self._nodes[node_id].dependencies = list(kept)

    def _required_edges(self, resource_id: str) -> list[Dependency]:
        return [edge for edge in self._edges[resource_id] if edge.required]

    def topological_sort(self) -> list[str]:
        """Return resource ids ordered over required edges.

        Returns:
            Every resource id exactly once; a dependent precedes its targets.

        Raises:
            CycleError: If required edges form a cycle.
        """
        in_degree: dict[str, int] = {node_id: 0 for node_id in self._nodes}
        for node_id in self._nodes:
            for edge in self._required_edges(node_id):
                # Edges to undeclared targets are reported by validate_dependencies
                if edge.target in in_degree:
                    in_degree[edge.target] += 1

        queue = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
        result: list[str] = []

        while queue:
            current = queue.popleft()
            result.append(current)

            for edge in self._required_edges(current):
                if edge.target in in_degree:
                    in_degree[edge.target] -= 1
                    if in_degree[edge.target] == 0:
                        queue.append(edge.target)

        if len(result) != len(self._nodes):
            cycle_nodes = [node_id for node_id, degree in in_degree.items() if degree > 0]
            raise CycleError(f"circular dependency detected involving: {cycle_nodes}")

        return result

    def validate_dependencies(self) -> None:
        """Check acyclicity, target existence and layer ordering.

        Raises:
            CycleError: If required edges form a cycle.
            ResourceValidationError: If a required edge targets an unknown resource.
            LayerViolationError: If a required edge points to a higher layer.
        """
        self.topological_sort()

        for node_id, resource in self._nodes.items():
            for edge in self._required_edges(node_id):
                target = self._nodes.get(edge.target)
                if target is None:
                    raise ResourceValidationError(
                        f"resource {node_id}: dependency {edge.target} not found"
                    )
                if resource.layer < target.layer:
                    raise LayerViolationError(
                        f"resource {node_id} (layer {resource.layer.label}) cannot depend on "
                        f"{edge.target} (layer {target.layer.label})"
                    )

        logger.debug("Dependency graph validated", extra={"resource_count": len(self._nodes)})
