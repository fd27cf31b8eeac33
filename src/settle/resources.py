"""Resource model.

A Resource is one declared unit of infrastructure (a host, a package, a
service or a file) with an identity, a layer, ordered dependencies, a
configuration map and a persisted state. Kind-specific subclasses implement
the lifecycle operations over a ResourceContext.

EXAMPLE DECLARATION:
```yaml
packages:
  - name: nginx
    version: "1.24.0"
services:
  - name: nginx
    state: enabled
    depends_on:
      - package:apt:nginx
```
"""

from __future__ import annotations

import base64
import logging
import posixpath
import shlex
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from .graph import ResourceValidationError
from .models import (
    DependencySpec,
    FileSpec,
    HostInventory,
    HostSpec,
    PackageSpec,
    ResourceDocument,
    ResourceSpec,
    ServiceSpec,
)
from .package_managers import PackageManager
from .progress import ProgressObserver
from .service_managers import ServiceManager
from .transport import Transport, TransportFactory

logger = logging.getLogger(__name__)


class ResourceError(Exception):
    """Raised when a lifecycle operation cannot run for a resource."""

    pass


# =============================================================================
# Enumerations
# =============================================================================


class Layer(IntEnum):
    """Ordered deployment layers. A resource may only require resources at or below its layer."""

    FOUNDATION = 0
    PLATFORM = 1
    INFRASTRUCTURE = 2
    APPLICATION = 3
    CONFIGURATION = 4
    RUNTIME = 5

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_name(cls, name: str) -> Layer:
        try:
            return cls[name.upper()]
        except KeyError as e:
            raise ValueError(f"unknown layer: {name}") from e


class EdgeType(str, Enum):
    """Kinds of dependency edges."""

    DEPENDS_ON = "depends_on"
    CONFIGURES = "configures"
    MONITORS = "monitors"
    TRIGGERS = "triggers"


class StateStatus(str, Enum):
    """Persisted resource status."""

    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    # Reserved; never assigned
    DRIFTED = "drifted"
    SKIPPED = "skipped"
    UNKNOWN = "unknown"


class ActionType(str, Enum):
    """What the executor does for a resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no_op"


# =============================================================================
# Value types
# =============================================================================


@dataclass(frozen=True)
class Dependency:
    """A dependency edge from the owning resource to target."""

    target: str
    edge_type: EdgeType = EdgeType.DEPENDS_ON
    required: bool = True

    @classmethod
    def from_spec(cls, spec: DependencySpec) -> Dependency:
        return cls(target=spec.target, edge_type=EdgeType(spec.type), required=spec.required)

    def to_dict(self) -> dict[str, Any]:
        return {"target": self.target, "type": self.edge_type.value, "required": self.required}


@dataclass
class ResourceState:
    """Last known state of a resource as persisted by the state store.

    Attributes:
        status: Outcome of the last lifecycle operation
        last_applied: When the last operation finished
        checksum: Digest of the canonical configuration at apply time
        metadata: Open map; "config" holds the applied snapshot, "error" the
            last failure message
    """

    status: StateStatus = StateStatus.PENDING
    last_applied: datetime | None = None
    checksum: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "last_applied": self.last_applied.isoformat() if self.last_applied else None,
            "checksum": self.checksum,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceState:
        """Create from dictionary."""
        return cls(
            status=StateStatus(data.get("status", "pending")),
            last_applied=(
                datetime.fromisoformat(data["last_applied"])
                if data.get("last_applied")
                else None
            ),
            checksum=data.get("checksum", ""),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Change:
    """A single field change. Drift is whole-resource, so plans carry none."""

    field: str
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "old_value": self.old_value, "new_value": self.new_value}


@dataclass
class Action:
    """One planned step for one resource."""

    resource_id: str
    type: ActionType
    changes: list[Change] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def reason(self) -> str:
        return str(self.metadata.get("reason", ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "type": self.type.value,
            "changes": [c.to_dict() for c in self.changes],
            "metadata": self.metadata,
        }


# =============================================================================
# Execution context
# =============================================================================


@dataclass
class ResourceContext:
    """Per-action execution context: the bound host, its transport and the observer.

    The transport is opened lazily on first use and closed by the executor
    once the action finishes.
    """

    host: HostSpec | None
    transport_factory: TransportFactory
    observer: ProgressObserver = field(default_factory=ProgressObserver)
    _transport: Transport | None = field(default=None, init=False, repr=False)

    @property
    def host_name(self) -> str | None:
        return self.host.name if self.host else None

    async def transport(self) -> Transport:
        if self.host is None:
            raise ResourceError("no host bound to this resource")
        if self._transport is None:
            transport = self.transport_factory(self.host)
            await transport.connect()
            self._transport = transport
        return self._transport

    async def close(self) -> None:
        if self._transport is not None:
            transport, self._transport = self._transport, None
            await transport.close()


# =============================================================================
# Resources
# =============================================================================


class Resource:
    """Base resource. Subclasses implement apply and destroy."""

    def __init__(
        self,
        resource_id: str,
        resource_type: str,
        layer: Layer,
        dependencies: Iterable[Dependency] | None = None,
        config: dict[str, Any] | None = None,
        host_name: str | None = None,
    ) -> None:
        self.id = resource_id
        self.type = resource_type
        self.layer = layer
        self.dependencies: list[Dependency] = list(dependencies or [])
        self.config: dict[str, Any] = dict(config or {})
        self.state = ResourceState()
        # Host this resource is pinned to; None binds the first declared host
        self.host_name = host_name

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.id!r}, layer={self.layer.label})"

    def validate(self) -> None:
        """Check identity fields.

        Raises:
            ResourceValidationError: If the id or type is empty.
        """
        if not self.id:
            raise ResourceValidationError("resource id cannot be empty")
        if not self.type:
            raise ResourceValidationError(f"resource {self.id}: type cannot be empty")

    def add_dependency(self, dependency: Dependency) -> None:
        self.dependencies.append(dependency)

    def required_dependencies(self) -> list[Dependency]:
        return [d for d in self.dependencies if d.required]

    def plan(self) -> Action:
        return Action(resource_id=self.id, type=ActionType.NO_OP)

    async def apply(self, ctx: ResourceContext) -> None:
        raise ResourceError(f"apply is not supported for {self.type} resource {self.id}")

    async def destroy(self, ctx: ResourceContext) -> None:
        raise ResourceError(f"destroy is not supported for {self.type} resource {self.id}")


def _qualify(base_id: str, host: str | None) -> str:
    return f"{base_id}@{host}" if host else base_id


def _layer(spec: ResourceSpec, default: Layer) -> Layer:
    return Layer.from_name(spec.layer) if spec.layer else default


def _dependencies(spec: ResourceSpec) -> list[Dependency]:
    return [Dependency.from_spec(d) for d in spec.depends_on]


def package_id(spec: PackageSpec) -> str:
    return _qualify(f"package:{spec.manager}:{spec.name}", spec.host)


def service_id(spec: ServiceSpec) -> str:
    return _qualify(f"service:{spec.manager}:{spec.name}", spec.host)


def file_id(spec: FileSpec) -> str:
    return _qualify(f"file:{spec.path}", spec.host)


def host_id(spec: HostSpec) -> str:
    return f"host:{spec.name}"


class HostResource(Resource):
    """A managed host. Applying it verifies SSH reachability."""

    def __init__(self, spec: HostSpec) -> None:
        super().__init__(
            host_id(spec),
            "host",
            Layer.FOUNDATION,
            config={
                "name": spec.name,
                "hostname": spec.hostname,
                "user": spec.user,
                "port": spec.port,
                "group": spec.group,
            },
            host_name=spec.name,
        )
        self.spec = spec

    async def apply(self, ctx: ResourceContext) -> None:
        await ctx.transport()
        ctx.observer.success(f"Host {self.spec.name} reachable", resource_id=self.id)

    async def destroy(self, ctx: ResourceContext) -> None:
        # Nothing to remove remotely; drop the connection
        await ctx.close()
        ctx.observer.success(f"Host {self.spec.name} released", resource_id=self.id)


class PackageResource(Resource):
    """A package installed through the declared package manager."""

    def __init__(self, spec: PackageSpec) -> None:
        super().__init__(
            package_id(spec),
            "package",
            _layer(spec, Layer.PLATFORM),
            dependencies=_dependencies(spec),
            config=spec.to_config(),
            host_name=spec.host,
        )
        self.spec = spec

    async def apply(self, ctx: ResourceContext) -> None:
        manager = PackageManager(self.spec.manager, await ctx.transport(), ctx.observer)
        if await manager.exists([self.spec]):
            ctx.observer.success(
                f"Package {self.spec.name} already installed",
                resource_id=self.id,
                host=ctx.host_name,
            )
            return
        await manager.install([self.spec])

    async def destroy(self, ctx: ResourceContext) -> None:
        manager = PackageManager(self.spec.manager, await ctx.transport(), ctx.observer)
        await manager.remove([self.spec])


class ServiceResource(Resource):
    """A service kept in its declared state by the init system."""

    def __init__(self, spec: ServiceSpec) -> None:
        super().__init__(
            service_id(spec),
            "service",
            _layer(spec, Layer.APPLICATION),
            dependencies=_dependencies(spec),
            config=spec.to_config(),
            host_name=spec.host,
        )
        self.spec = spec

    async def apply(self, ctx: ResourceContext) -> None:
        manager = ServiceManager(self.spec.manager, await ctx.transport(), ctx.observer)
        changed = await manager.ensure(self.spec.name, self.spec.state)
        ctx.observer.success(
            f"Service {self.spec.name} {self.spec.state}",
            resource_id=self.id,
            host=ctx.host_name,
            changed=changed,
        )

    async def destroy(self, ctx: ResourceContext) -> None:
        manager = ServiceManager(self.spec.manager, await ctx.transport(), ctx.observer)
        await manager.remove(self.spec.name)


class FileResource(Resource):
    """A file whose content, mode and ownership are managed."""

    def __init__(self, spec: FileSpec) -> None:
        super().__init__(
            file_id(spec),
            "file",
            _layer(spec, Layer.CONFIGURATION),
            dependencies=_dependencies(spec),
            config=spec.to_config(),
            host_name=spec.host,
        )
        self.spec = spec

    def commands(self) -> list[str]:
        """Shell commands that write the file and set its attributes."""
        path = shlex.quote(self.spec.path)
        parent = shlex.quote(posixpath.dirname(self.spec.path) or "/")
        # base64 keeps arbitrary content intact through the shell
        payload = base64.b64encode(self.spec.content.encode("utf-8")).decode("ascii")

        commands = [
            f"sudo mkdir -p {parent}",
            f"echo {shlex.quote(payload)} | base64 -d | sudo tee {path} > /dev/null",
            f"sudo chmod {self.spec.mode:04o} {path}",
        ]
        if self.spec.owner:
            owner = self.spec.owner
            if self.spec.group:
                owner = f"{owner}:{self.spec.group}"
            commands.append(f"sudo chown {shlex.quote(owner)} {path}")
        elif self.spec.group:
            commands.append(f"sudo chgrp {shlex.quote(self.spec.group)} {path}")
        return commands

    async def apply(self, ctx: ResourceContext) -> None:
        transport = await ctx.transport()
        for command in self.commands():
            ctx.observer.command(transport.host.name, command)
            await transport.run(command)
        ctx.observer.success(
            f"File {self.spec.path} written",
            resource_id=self.id,
            host=ctx.host_name,
        )

    async def destroy(self, ctx: ResourceContext) -> None:
        transport = await ctx.transport()
        command = f"sudo rm -f {shlex.quote(self.spec.path)}"
        ctx.observer.command(transport.host.name, command)
        await transport.run(command)


# =============================================================================
# Construction
# =============================================================================


def build_resources(
    document: ResourceDocument,
    inventory: HostInventory | None = None,
    include_hosts: bool = False,
) -> list[Resource]:
    """Turn declarations into resources, hosts first when requested.

    Raises:
        ResourceValidationError: If a resource is pinned to an undeclared host.
    """
    resources: list[Resource] = []
    known_hosts = {h.name for h in inventory.hosts} if inventory else None

    if include_hosts and inventory:
        resources.extend(HostResource(h) for h in inventory.hosts)

    declared: list[Resource] = [
        *(PackageResource(p) for p in document.packages),
        *(ServiceResource(s) for s in document.services),
        *(FileResource(f) for f in document.files),
    ]

    for resource in declared:
        if (
            known_hosts is not None
            and resource.host_name is not None
            and resource.host_name not in known_hosts
        ):
            raise ResourceValidationError(
                f"resource {resource.id} is pinned to unknown host '{resource.host_name}'"
            )
        resources.append(resource)

    logger.debug(
        "Built resources",
        extra={"resource_count": len(resources), "include_hosts": include_hosts},
    )
    return resources
