"""Pydantic models for declared hosts and resources.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Typed configuration payloads per resource kind
"""

from __future__ import annotations

import os
import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import DEFAULT_SSH_PORT, MAX_NAME_LENGTH

# Hostname or dotted IPv4 address
VALID_HOSTNAME_PATTERN = (
    r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"
    r"|^(\d{1,3}\.){3}\d{1,3}$"
)

SUPPORTED_PACKAGE_MANAGERS = ("apt", "dnf", "yum", "zypper", "pacman", "brew")
SUPPORTED_SERVICE_MANAGERS = ("systemd", "openrc")
SERVICE_STATES = ("running", "stopped", "enabled", "disabled")

Name = Annotated[str, Field(min_length=1, max_length=MAX_NAME_LENGTH)]


# =============================================================================
# Hosts
# =============================================================================


class HostSpec(BaseModel):
    """A remote machine reachable over SSH."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Name
    hostname: str = ""
    user: Annotated[str, Field(max_length=MAX_NAME_LENGTH)] = ""
    port: Annotated[int, Field(ge=1, le=65535)] = DEFAULT_SSH_PORT
    key_file: str = Field("", alias="keyfile")
    group: Annotated[str, Field(max_length=MAX_NAME_LENGTH)] = ""

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v: str) -> str:
        # Empty hostname falls back to ~/.ssh/config resolution by name
        if not v:
            return v
        if len(v) > MAX_NAME_LENGTH:
            raise ValueError(f"hostname too long: {len(v)} characters")
        if not re.match(VALID_HOSTNAME_PATTERN, v):
            raise ValueError(f"invalid hostname format: {v}")
        return v

    @field_validator("key_file")
    @classmethod
    def expand_key_file(cls, v: str) -> str:
        if not v:
            return v
        if ".." in v.split(os.sep):
            raise ValueError(f"key_file contains directory traversal: {v}")
        return os.path.abspath(os.path.expanduser(v))

    @property
    def address(self) -> str:
        """Address to connect to (hostname, or the inventory name as an ssh alias)."""
        return self.hostname or self.name


class HostInventory(BaseModel):
    """Top-level document of the hosts file."""

    model_config = {"extra": "ignore"}

    hosts: list[HostSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def unique_names(self) -> HostInventory:
        seen: set[str] = set()
        for host in self.hosts:
            if host.name in seen:
                raise ValueError(f"duplicate host name: {host.name}")
            seen.add(host.name)
        return self


# =============================================================================
# Resources
# =============================================================================


class DependencySpec(BaseModel):
    """A declared dependency edge.

    May be written as a bare resource id (a required depends_on edge) or as a
    mapping with target, type and required.
    """

    model_config = {"extra": "ignore"}

    target: Annotated[str, Field(min_length=1)]
    type: str = "depends_on"
    required: bool = True

    @model_validator(mode="before")
    @classmethod
    def from_shorthand(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"target": data}
        return data

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        valid = {"depends_on", "configures", "monitors", "triggers"}
        if v not in valid:
            raise ValueError(f"type must be one of {sorted(valid)}")
        return v


class ResourceSpec(BaseModel):
    """Fields shared by every resource declaration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    # Name of the host this resource lives on; unset means the first host
    host: str | None = None

    # Layer override by name (foundation, platform, ...)
    layer: str | None = None

    depends_on: list[DependencySpec] = Field(default_factory=list, alias="dependsOn")

    @field_validator("layer")
    @classmethod
    def validate_layer(cls, v: str | None) -> str | None:
        if v is None:
            return v
        valid = (
            "foundation",
            "platform",
            "infrastructure",
            "application",
            "configuration",
            "runtime",
        )
        if v.lower() not in valid:
            raise ValueError(f"layer must be one of {list(valid)}")
        return v.lower()


class PackageSpec(ResourceSpec):
    """A package installed through a package manager."""

    name: Name
    version: str = ""
    manager: str = "apt"

    @field_validator("manager")
    @classmethod
    def validate_manager(cls, v: str) -> str:
        if v not in SUPPORTED_PACKAGE_MANAGERS:
            raise ValueError(f"manager must be one of {list(SUPPORTED_PACKAGE_MANAGERS)}")
        return v

    def to_config(self) -> dict[str, Any]:
        return {"name": self.name, "version": self.version, "manager": self.manager}


class ServiceSpec(ResourceSpec):
    """A system service kept in a desired state."""

    name: Name
    state: str = "running"
    manager: str = "systemd"

    @field_validator("state")
    @classmethod
    def validate_state(cls, v: str) -> str:
        if v not in SERVICE_STATES:
            raise ValueError(f"state must be one of {list(SERVICE_STATES)}")
        return v

    @field_validator("manager")
    @classmethod
    def validate_manager(cls, v: str) -> str:
        if v not in SUPPORTED_SERVICE_MANAGERS:
            raise ValueError(f"manager must be one of {list(SUPPORTED_SERVICE_MANAGERS)}")
        return v

    def to_config(self) -> dict[str, Any]:
        return {"name": self.name, "state": self.state, "manager": self.manager}


class FileSpec(ResourceSpec):
    """A file with managed content, mode and ownership."""

    path: Annotated[str, Field(min_length=1, max_length=4096)]
    content: str = ""
    mode: Annotated[int, Field(ge=0, le=0o7777)] = 0o644
    owner: str = ""
    group: str = ""

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("path must be absolute")
        if ".." in v.split("/"):
            raise ValueError(f"path contains directory traversal: {v}")
        return v

    @field_validator("mode", mode="before")
    @classmethod
    def parse_octal_mode(cls, v: Any) -> Any:
        # Quoted modes ("0644", "755") are octal strings; PyYAML already reads 0644 as octal
        if isinstance(v, str):
            try:
                return int(v, 8)
            except ValueError as e:
                raise ValueError(f"mode must be an octal string: {v}") from e
        return v

    def to_config(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "content": self.content,
            "mode": self.mode,
            "owner": self.owner,
            "group": self.group,
        }


class ResourceDocument(BaseModel):
    """Top-level document of a resource declaration file."""

    model_config = {"extra": "ignore"}

    packages: list[PackageSpec] = Field(default_factory=list)
    services: list[ServiceSpec] = Field(default_factory=list)
    files: list[FileSpec] = Field(default_factory=list)

    def count(self) -> int:
        return len(self.packages) + len(self.services) + len(self.files)

    def merge(self, other: ResourceDocument) -> ResourceDocument:
        return ResourceDocument(
            packages=[*self.packages, *other.packages],
            services=[*self.services, *other.services],
            files=[*self.files, *other.files],
        )
