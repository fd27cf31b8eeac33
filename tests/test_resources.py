"""Tests for the resource model."""

from __future__ import annotations

import base64

import pytest

from settle.graph import ResourceValidationError
from settle.models import (
    FileSpec,
    HostInventory,
    HostSpec,
    PackageSpec,
    ResourceDocument,
    ServiceSpec,
)
from settle.package_managers import PackageOperationError
from settle.resources import (
    Action,
    ActionType,
    Change,
    FileResource,
    HostResource,
    Layer,
    PackageResource,
    Resource,
    ResourceContext,
    ResourceError,
    ServiceResource,
    build_resources,
)
from ssh_mock import MockHostContext


@pytest.fixture
def ctx() -> MockHostContext:
    return MockHostContext()


@pytest.fixture
def web1(hosts: list[HostSpec]) -> HostSpec:
    return hosts[0]


def context_for(host: HostSpec | None, mock: MockHostContext) -> ResourceContext:
    return ResourceContext(host=host, transport_factory=mock.factory)


class TestLayer:
    """Tests for the Layer enum."""

    def test_order(self) -> None:
        """Test layers are ordered Foundation to Runtime."""
        assert (
            Layer.FOUNDATION
            < Layer.PLATFORM
            < Layer.INFRASTRUCTURE
            < Layer.APPLICATION
            < Layer.CONFIGURATION
            < Layer.RUNTIME
        )

    def test_from_name(self) -> None:
        """Test case-insensitive lookup by name."""
        assert Layer.from_name("Platform") is Layer.PLATFORM
        assert Layer.RUNTIME.label == "runtime"

    def test_from_unknown_name(self) -> None:
        """Test unknown names raise ValueError."""
        with pytest.raises(ValueError, match="unknown layer"):
            Layer.from_name("kernel")


class TestIdentity:
    """Tests for resource ids, layers and config."""

    def test_package(self) -> None:
        """Test package id, default layer and config."""
        resource = PackageResource(PackageSpec(name="nginx", version="1.24.0"))

        assert resource.id == "package:apt:nginx"
        assert resource.type == "package"
        assert resource.layer == Layer.PLATFORM
        assert resource.config == {"name": "nginx", "version": "1.24.0", "manager": "apt"}
        assert resource.host_name is None

    def test_service(self) -> None:
        """Test service defaults to the application layer."""
        resource = ServiceResource(ServiceSpec(name="nginx", manager="openrc"))

        assert resource.id == "service:openrc:nginx"
        assert resource.layer == Layer.APPLICATION

    def test_file(self) -> None:
        """Test file defaults to the configuration layer."""
        resource = FileResource(FileSpec(path="/etc/motd", content="hi"))

        assert resource.id == "file:/etc/motd"
        assert resource.layer == Layer.CONFIGURATION
        assert resource.config["mode"] == 0o644

    def test_host(self, web1: HostSpec) -> None:
        """Test host resources live in the foundation layer."""
        resource = HostResource(web1)

        assert resource.id == "host:web1"
        assert resource.layer == Layer.FOUNDATION
        assert resource.host_name == "web1"

    def test_pinned_resource_id(self) -> None:
        """Test pinning to a host qualifies the id."""
        resource = PackageResource(PackageSpec(name="nginx", host="web2"))

        assert resource.id == "package:apt:nginx@web2"
        assert resource.host_name == "web2"

    def test_layer_override(self) -> None:
        """Test a declared layer replaces the default."""
        resource = PackageResource(PackageSpec(name="nginx", layer="infrastructure"))

        assert resource.layer == Layer.INFRASTRUCTURE

    def test_default_plan_is_no_op(self) -> None:
        """Test the base plan returns a no-op action."""
        resource = Resource("custom:x", "custom", Layer.RUNTIME)

        assert resource.plan() == Action(resource_id="custom:x", type=ActionType.NO_OP)

    def test_action_serialization(self) -> None:
        """Test Action.to_dict including changes."""
        action = Action(
            resource_id="file:/etc/motd",
            type=ActionType.UPDATE,
            changes=[Change("content", "a", "b")],
            metadata={"reason": "configuration drift detected"},
        )

        assert action.to_dict() == {
            "resource_id": "file:/etc/motd",
            "type": "update",
            "changes": [{"field": "content", "old_value": "a", "new_value": "b"}],
            "metadata": {"reason": "configuration drift detected"},
        }

    @pytest.mark.asyncio
    async def test_base_lifecycle_unsupported(self, ctx: MockHostContext, web1: HostSpec) -> None:
        """Test the base class refuses apply and destroy."""
        resource = Resource("custom:x", "custom", Layer.RUNTIME)

        with pytest.raises(ResourceError, match="apply is not supported"):
            await resource.apply(context_for(web1, ctx))
        with pytest.raises(ResourceError, match="destroy is not supported"):
            await resource.destroy(context_for(web1, ctx))


class TestResourceContext:
    """Tests for per-action contexts."""

    @pytest.mark.asyncio
    async def test_transport_opened_once(self, ctx: MockHostContext, web1: HostSpec) -> None:
        """Test the transport is created lazily and reused."""
        context = context_for(web1, ctx)

        first = await context.transport()
        second = await context.transport()

        assert first is second
        assert ctx.connect_attempts == {"web1": 1}

        await context.close()
        assert ctx.open_connections == 0

    @pytest.mark.asyncio
    async def test_no_host(self, ctx: MockHostContext) -> None:
        """Test a context without a host cannot open a transport."""
        with pytest.raises(ResourceError, match="no host bound"):
            await context_for(None, ctx).transport()


class TestLifecycle:
    """Tests for kind-specific apply and destroy."""

    @pytest.mark.asyncio
    async def test_package_apply_installs_missing(
        self, ctx: MockHostContext, web1: HostSpec
    ) -> None:
        """Test a missing pinned package is installed with its version."""
        ctx.respond("dpkg -s nginx", exit_status=1)
        resource = PackageResource(PackageSpec(name="nginx", version="1.24.0"))

        await resource.apply(context_for(web1, ctx))

        assert ctx.ran("apt-get install -y nginx=1.24.0")

    @pytest.mark.asyncio
    async def test_package_apply_wrong_version_reinstalls(
        self, ctx: MockHostContext, web1: HostSpec
    ) -> None:
        """Test an installed package at another version is installed again."""
        ctx.respond("dpkg -s nginx", output="Package: nginx\nVersion: 1.18.0\n")
        resource = PackageResource(PackageSpec(name="nginx", version="1.24.0"))

        await resource.apply(context_for(web1, ctx))

        assert ctx.ran("apt-get install -y nginx=1.24.0")

    @pytest.mark.asyncio
    async def test_package_apply_failure(self, ctx: MockHostContext, web1: HostSpec) -> None:
        """Test an install failure surfaces as PackageOperationError."""
        ctx.respond("dpkg -s", exit_status=1)
        ctx.respond("apt-get install", exit_status=100)
        resource = PackageResource(PackageSpec(name="nginx"))

        with pytest.raises(PackageOperationError):
            await resource.apply(context_for(web1, ctx))

    @pytest.mark.asyncio
    async def test_package_destroy(self, ctx: MockHostContext, web1: HostSpec) -> None:
        """Test destroy removes through the declared manager."""
        resource = PackageResource(PackageSpec(name="htop", manager="dnf"))

        await resource.destroy(context_for(web1, ctx))

        assert ctx.commands_for("web1") == ["sudo dnf remove -y htop"]

    @pytest.mark.asyncio
    async def test_service_destroy(self, ctx: MockHostContext, web1: HostSpec) -> None:
        """Test destroy stops and disables the service."""
        resource = ServiceResource(ServiceSpec(name="nginx"))

        await resource.destroy(context_for(web1, ctx))

        assert ctx.ran("sudo systemctl stop nginx")
        assert ctx.ran("sudo systemctl disable nginx")

    def test_file_commands(self) -> None:
        """Test the file is written via base64 then chmod and chown."""
        spec = FileSpec(
            path="/etc/app/app.conf",
            content="key = 'value'\n",
            mode=0o600,
            owner="app",
            group="app",
        )

        commands = FileResource(spec).commands()

        payload = base64.b64encode(spec.content.encode()).decode()
        assert commands == [
            "sudo mkdir -p /etc/app",
            f"echo {payload} | base64 -d | sudo tee /etc/app/app.conf > /dev/null",
            "sudo chmod 0600 /etc/app/app.conf",
            "sudo chown app:app /etc/app/app.conf",
        ]

    def test_file_group_only(self) -> None:
        """Test a group without owner uses chgrp."""
        commands = FileResource(FileSpec(path="/etc/motd", group="staff")).commands()

        assert commands[-1] == "sudo chgrp staff /etc/motd"

    @pytest.mark.asyncio
    async def test_file_apply_and_destroy(self, ctx: MockHostContext, web1: HostSpec) -> None:
        """Test apply runs the write commands and destroy removes the file."""
        resource = FileResource(FileSpec(path="/etc/motd", content="welcome"))

        await resource.apply(context_for(web1, ctx))
        await resource.destroy(context_for(web1, ctx))

        commands = ctx.commands_for("web1")
        assert commands[:3] == resource.commands()
        assert commands[-1] == "sudo rm -f /etc/motd"

    @pytest.mark.asyncio
    async def test_host_apply_connects(self, ctx: MockHostContext, web1: HostSpec) -> None:
        """Test applying a host verifies reachability."""
        await HostResource(web1).apply(context_for(web1, ctx))

        assert ctx.connect_attempts == {"web1": 1}


class TestBuildResources:
    """Tests for turning declarations into resources."""

    @pytest.fixture
    def document(self) -> ResourceDocument:
        return ResourceDocument(
            packages=[PackageSpec(name="nginx")],
            services=[ServiceSpec(name="nginx", depends_on=["package:apt:nginx"])],
            files=[FileSpec(path="/etc/motd")],
        )

    def test_kinds_in_order(self, document: ResourceDocument) -> None:
        """Test packages, services and files are built in that order."""
        resources = build_resources(document)

        assert [r.id for r in resources] == [
            "package:apt:nginx",
            "service:systemd:nginx",
            "file:/etc/motd",
        ]
        assert resources[1].dependencies[0].target == "package:apt:nginx"

    def test_hosts_only_on_request(
        self, document: ResourceDocument, hosts: list[HostSpec]
    ) -> None:
        """Test host resources are prepended when requested."""
        inventory = HostInventory(hosts=hosts)

        without = build_resources(document, inventory)
        with_hosts = build_resources(document, inventory, include_hosts=True)

        assert all(not isinstance(r, HostResource) for r in without)
        assert [r.id for r in with_hosts[:2]] == ["host:web1", "host:web2"]

    def test_unknown_pinned_host(self, hosts: list[HostSpec]) -> None:
        """Test pinning to an undeclared host is rejected."""
        document = ResourceDocument(packages=[PackageSpec(name="nginx", host="db1")])

        with pytest.raises(ResourceValidationError, match="db1"):
            build_resources(document, HostInventory(hosts=hosts))
