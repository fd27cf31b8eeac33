"""Persisted resource state and drift detection.

The state document maps ResourceID to the last known outcome:

```json
{
  "package:apt:nginx": {
    "status": "applied",
    "last_applied": "2024-05-01T10:00:00+00:00",
    "checksum": "3f1c...",
    "metadata": {"config": {"name": "nginx", "version": "", "manager": "apt"}}
  }
}
```

The whole document is rewritten on every mutation. Writes are neither atomic
nor locked; one operator per state file is assumed.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .resources import Resource, ResourceState, StateStatus

if TYPE_CHECKING:
    from .graph import ResourceGraph

logger = logging.getLogger(__name__)


class StateError(Exception):
    """Base class for state store failures."""

    pass


class PersistenceError(StateError):
    """Raised when the state file cannot be read, parsed or written."""

    pass


class DriftDetectionError(StateError):
    """Raised when a configuration cannot be serialized for comparison."""

    pass


def canonical_config(config: dict[str, Any]) -> str:
    """Serialize a configuration map deterministically.

    Raises:
        DriftDetectionError: If the map is not JSON serializable.
    """
    try:
        return json.dumps(config, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise DriftDetectionError(f"failed to serialize configuration: {e}") from e


def config_checksum(config: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_config(config).encode()).hexdigest()


class StateStore:
    """Durable mapping of ResourceID to ResourceState backed by a JSON file."""

    def __init__(self, state_file: Path, graph: ResourceGraph | None = None) -> None:
        self.state_file = Path(state_file)
        self.graph = graph
        self._states: dict[str, ResourceState] = {}

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def load_state(self) -> None:
        """Load the state file; a missing file is an empty store.

        Raises:
            PersistenceError: If the file is unreadable or malformed.
        """
        if not self.state_file.exists():
            logger.debug("No state file, starting empty", extra={"path": str(self.state_file)})
            self._states = {}
            return

        try:
            raw = json.loads(self.state_file.read_text(encoding="utf-8"))
        except OSError as e:
            raise PersistenceError(f"failed to read state file {self.state_file}: {e}") from e
        except json.JSONDecodeError as e:
            raise PersistenceError(f"malformed state file {self.state_file}: {e}") from e

        if not isinstance(raw, dict):
            raise PersistenceError(f"malformed state file {self.state_file}: expected an object")

        states: dict[str, ResourceState] = {}
        for resource_id, entry in raw.items():
            if not isinstance(entry, dict):
                raise PersistenceError(f"malformed state entry for {resource_id}")
            try:
                states[resource_id] = ResourceState.from_dict(entry)
            except (TypeError, ValueError) as e:
                raise PersistenceError(f"malformed state entry for {resource_id}: {e}") from e

        self._states = states
        logger.info(
            "Loaded state",
            extra={"path": str(self.state_file), "resource_count": len(states)},
        )

    def save_state(self) -> None:
        """Write the whole state document.

        Raises:
            PersistenceError: If the file cannot be written.
        """
        document = {rid: state.to_dict() for rid, state in self._states.items()}
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self.state_file.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"failed to write state file {self.state_file}: {e}") from e

    def get_state(self, resource_id: str) -> ResourceState | None:
        return self._states.get(resource_id)

    def set_state(self, resource_id: str, state: ResourceState) -> None:
        self._states[resource_id] = state

    def remove_state(self, resource_id: str) -> None:
        self._states.pop(resource_id, None)

    def all_states(self) -> dict[str, ResourceState]:
        return dict(self._states)

    def resources_by_status(self, status: StateStatus) -> list[str]:
        return [rid for rid, state in self._states.items() if state.status == status]

    def detect_drift(self, resource: Resource) -> bool:
        """Return True if the resource's configuration differs from its applied snapshot.

        A resource with no entry, or an entry without a config snapshot, has drifted.

        Raises:
            DriftDetectionError: If either configuration cannot be serialized.
        """
        state = self._states.get(resource.id)
        if state is None or "config" not in state.metadata:
            return True

        try:
            current = canonical_config(resource.config)
            snapshot = canonical_config(state.metadata["config"])
        except DriftDetectionError as e:
            raise DriftDetectionError(f"resource {resource.id}: {e}") from e
        return current != snapshot

    def mark_applied(self, resource: Resource) -> None:
        """Record a successful operation and persist immediately.

        Raises:
            PersistenceError: If the state file cannot be written.
        """
        try:
            checksum = config_checksum(resource.config)
        except DriftDetectionError as e:
            raise PersistenceError(f"resource {resource.id}: {e}") from e

        state = ResourceState(
            status=StateStatus.APPLIED,
            last_applied=datetime.now(UTC),
            checksum=checksum,
            metadata={"config": dict(resource.config)},
        )
        self._states[resource.id] = state
        resource.state = state
        self.save_state()

    def mark_failed(self, resource: Resource, message: str) -> None:
        """Record a failed operation and persist immediately.

        Raises:
            PersistenceError: If the state file cannot be written.
        """
        state = ResourceState(
            status=StateStatus.FAILED,
            last_applied=datetime.now(UTC),
            metadata={"error": message},
        )
        self._states[resource.id] = state
        resource.state = state
        self.save_state()

    def cleanup(self) -> list[str]:
        """Drop entries for resources no longer in the graph.

        Returns:
            Removed resource ids. The file is rewritten only when non-empty.
        """
        if self.graph is None:
            return []

        removed = [rid for rid in self._states if rid not in self.graph]
        for rid in removed:
            del self._states[rid]

        if removed:
            logger.info(
                "Removed state of undeclared resources",
                extra={"removed": removed, "count": len(removed)},
            )
            self.save_state()
        return removed
