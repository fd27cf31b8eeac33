"""Tests for package manager drivers."""

from __future__ import annotations

import pytest

from settle.models import HostSpec, PackageSpec
from settle.package_managers import (
    MANAGER_COMMANDS,
    PackageManager,
    PackageOperationError,
    version_matches,
)
from ssh_mock import MockHostContext, MockTransport


@pytest.fixture
def ctx() -> MockHostContext:
    return MockHostContext()


@pytest.fixture
def transport(ctx: MockHostContext, hosts: list[HostSpec]) -> MockTransport:
    return ctx.factory(hosts[0])


class TestCommandTable:
    """Tests for the supported managers."""

    def test_every_model_manager_has_commands(self) -> None:
        """Test each manager accepted by PackageSpec has a command table."""
        from settle.models import SUPPORTED_PACKAGE_MANAGERS

        assert set(SUPPORTED_PACKAGE_MANAGERS) == set(MANAGER_COMMANDS)

    def test_unsupported_manager(self, transport: MockTransport) -> None:
        """Test unknown managers are rejected."""
        with pytest.raises(PackageOperationError, match="unsupported package manager"):
            PackageManager("emerge", transport)

    @pytest.mark.parametrize(
        ("manager", "expected"),
        [
            ("apt", "nginx=1.24.0"),
            ("dnf", "nginx-1.24.0"),
            ("yum", "nginx-1.24.0"),
            ("zypper", "nginx=1.24.0"),
            ("pacman", "nginx"),
            ("brew", "nginx@1.24.0"),
        ],
    )
    def test_version_pinning(self, transport: MockTransport, manager: str, expected: str) -> None:
        """Test each manager's pinned package argument."""
        driver = PackageManager(manager, transport)

        assert driver.package_argument(PackageSpec(name="nginx", version="1.24.0")) == expected

    def test_latest_is_unpinned(self, transport: MockTransport) -> None:
        """Test version "latest" installs the bare name."""
        driver = PackageManager("apt", transport)

        assert driver.package_argument(PackageSpec(name="nginx", version="latest")) == "nginx"


class TestBatch:
    """Tests for batch install and remove."""

    @pytest.mark.asyncio
    async def test_install_all_succeed(
        self, transport: MockTransport, ctx: MockHostContext
    ) -> None:
        """Test each package is installed in order."""
        driver = PackageManager("apt", transport)

        batch = await driver.install([PackageSpec(name="curl"), PackageSpec(name="git")])

        assert len(batch.succeeded) == 2
        assert batch.failed == []
        assert ctx.commands_for("web1") == [
            "sudo DEBIAN_FRONTEND=noninteractive apt-get install -y curl",
            "sudo DEBIAN_FRONTEND=noninteractive apt-get install -y git",
        ]

    @pytest.mark.asyncio
    async def test_partial_failure_tolerated(
        self, transport: MockTransport, ctx: MockHostContext
    ) -> None:
        """Test a batch with some failures returns per-item results."""
        ctx.respond("install -y git", exit_status=100, output="E: broken")
        driver = PackageManager("apt", transport)

        batch = await driver.install([PackageSpec(name="curl"), PackageSpec(name="git")])

        assert [r.package.name for r in batch.succeeded] == ["curl"]
        assert [r.package.name for r in batch.failed] == ["git"]
        assert batch.failed[0].output == "E: broken"

    @pytest.mark.asyncio
    async def test_all_failed_raises(self, transport: MockTransport, ctx: MockHostContext) -> None:
        """Test a batch where every item failed raises."""
        ctx.respond("apt-get remove", exit_status=1)
        driver = PackageManager("apt", transport)

        with pytest.raises(PackageOperationError, match="all package remove operations failed"):
            await driver.remove([PackageSpec(name="curl"), PackageSpec(name="git")])

    @pytest.mark.asyncio
    async def test_timeout_is_item_failure(
        self, transport: MockTransport, ctx: MockHostContext
    ) -> None:
        """Test a timed out item is recorded as failed."""
        ctx.timeout_on("install -y curl")
        driver = PackageManager("apt", transport)

        batch = await driver.install([PackageSpec(name="curl"), PackageSpec(name="git")])

        assert [r.package.name for r in batch.failed] == ["curl"]
        assert "timed out" in str(batch.failed[0].error)

    @pytest.mark.asyncio
    async def test_empty_batch(self, transport: MockTransport) -> None:
        """Test an empty batch is a no-op."""
        batch = await PackageManager("apt", transport).install([])

        assert batch.results == []


class TestExists:
    """Tests for installed-package queries."""

    @pytest.mark.asyncio
    async def test_all_installed(self, transport: MockTransport, ctx: MockHostContext) -> None:
        """Test exists is true when every query succeeds."""
        driver = PackageManager("dnf", transport)

        assert await driver.exists([PackageSpec(name="curl"), PackageSpec(name="git")]) is True
        assert ctx.commands_for("web1") == ["rpm -q curl", "rpm -q git"]

    @pytest.mark.asyncio
    async def test_missing_package(self, transport: MockTransport, ctx: MockHostContext) -> None:
        """Test a non-zero query exit means not installed, not an error."""
        ctx.respond("pacman -Q git", exit_status=1)
        driver = PackageManager("pacman", transport)

        assert await driver.exists([PackageSpec(name="curl"), PackageSpec(name="git")]) is False

    @pytest.mark.asyncio
    async def test_pinned_version_checked(
        self, transport: MockTransport, ctx: MockHostContext
    ) -> None:
        """Test a pinned version must match the installed version."""
        ctx.respond("brew list --versions node", output="node 20.1.0\n")
        driver = PackageManager("brew", transport)

        assert await driver.exists([PackageSpec(name="node", version="20.1.0")]) is True
        assert await driver.exists([PackageSpec(name="node", version="21.0.0")]) is False

    @pytest.mark.asyncio
    async def test_shorter_pinned_version_not_installed(
        self, transport: MockTransport, ctx: MockHostContext
    ) -> None:
        """Test a version that only appears inside other output is not a match."""
        ctx.respond(
            "dpkg -s nginx",
            output=(
                "Package: nginx\n"
                "Status: install ok installed\n"
                "Version: 1.24.0-2\n"
                "Depends: libc6 (>= 2.34), libssl3 (>= 1.2)\n"
            ),
        )
        driver = PackageManager("apt", transport)

        assert await driver.exists([PackageSpec(name="nginx", version="1.2")]) is False
        assert await driver.exists([PackageSpec(name="nginx", version="2.34")]) is False
        assert await driver.exists([PackageSpec(name="nginx", version="1.24.0")]) is True
        assert await driver.exists([PackageSpec(name="nginx", version="1.24")]) is True

    @pytest.mark.asyncio
    async def test_rpm_version_field(self, transport: MockTransport, ctx: MockHostContext) -> None:
        """Test the version is read from rpm's name-version-release output."""
        ctx.respond("rpm -q nginx", output="nginx-1.24.0-1.el9.x86_64\n")
        driver = PackageManager("dnf", transport)

        assert await driver.exists([PackageSpec(name="nginx", version="1.24.0")]) is True
        assert await driver.exists([PackageSpec(name="nginx", version="1.2")]) is False

    @pytest.mark.asyncio
    async def test_brew_multiple_versions(
        self, transport: MockTransport, ctx: MockHostContext
    ) -> None:
        """Test any of several installed brew versions satisfies a pin."""
        ctx.respond("brew list --versions node", output="node 20.1.0 18.19.0\n")
        driver = PackageManager("brew", transport)

        assert await driver.exists([PackageSpec(name="node", version="18.19.0")]) is True
        assert await driver.exists([PackageSpec(name="node", version="18.1")]) is False

    @pytest.mark.parametrize(
        ("declared", "installed", "expected"),
        [
            ("1.24.0", "1.24.0", True),
            ("1.24", "1.24.0-2", True),
            ("1.24.0", "1:1.24.0-2ubuntu1", True),
            ("1:1.24.0", "1:1.24.0-2", True),
            ("1.2", "1.24.0", False),
            ("1.24.0-3", "1.24.0-2", False),
        ],
    )
    def test_version_matches(self, declared: str, installed: str, expected: bool) -> None:
        """Test versions match exactly or on a component boundary."""
        assert version_matches(declared, installed) is expected

    @pytest.mark.asyncio
    async def test_names_are_quoted(self, transport: MockTransport, ctx: MockHostContext) -> None:
        """Test package names are shell quoted."""
        driver = PackageManager("apt", transport)

        await driver.exists([PackageSpec(name="foo; rm -rf /")])

        assert ctx.commands_for("web1") == ["dpkg -s 'foo; rm -rf /'"]
