"""Package manager drivers.

Each driver turns install / remove / exists requests into shell commands run
over a Transport. Batch operations record per-package results; a batch only
escalates to PackageOperationError when every package in it failed.
"""

from __future__ import annotations

import logging
import re
import shlex
import time
from dataclasses import dataclass, field

from .models import PackageSpec
from .progress import ProgressObserver
from .transport import CommandFailedError, Transport, TransportError

logger = logging.getLogger(__name__)


class PackageOperationError(Exception):
    """Raised when a package operation fails for every package in a batch."""

    pass


@dataclass(frozen=True)
class ManagerCommands:
    """Command templates for one package manager.

    ``{package}`` is the (optionally version pinned) package argument,
    ``{name}`` the bare package name. ``version_pattern`` is a multiline regex
    over the query output whose first group holds the installed version(s);
    its ``{name}`` placeholder receives the regex-escaped package name.
    """

    install: str
    remove: str
    query: str
    version_pattern: str
    version_format: str = "{name}"


MANAGER_COMMANDS: dict[str, ManagerCommands] = {
    "apt": ManagerCommands(
        install="sudo DEBIAN_FRONTEND=noninteractive apt-get install -y {package}",
        remove="sudo DEBIAN_FRONTEND=noninteractive apt-get remove -y {name}",
        query="dpkg -s {name}",
        version_pattern=r"^Version:\s*(\S+)",
        version_format="{name}={version}",
    ),
    "dnf": ManagerCommands(
        install="sudo dnf install -y {package}",
        remove="sudo dnf remove -y {name}",
        query="rpm -q {name}",
        version_pattern=r"^{name}-(\S+)$",
        version_format="{name}-{version}",
    ),
    "yum": ManagerCommands(
        install="sudo yum install -y {package}",
        remove="sudo yum remove -y {name}",
        query="rpm -q {name}",
        version_pattern=r"^{name}-(\S+)$",
        version_format="{name}-{version}",
    ),
    "zypper": ManagerCommands(
        install="sudo zypper --non-interactive install {package}",
        remove="sudo zypper --non-interactive remove {name}",
        query="rpm -q {name}",
        version_pattern=r"^{name}-(\S+)$",
        version_format="{name}={version}",
    ),
    # pacman cannot pin versions from the sync repositories
    "pacman": ManagerCommands(
        install="sudo pacman -S --noconfirm {package}",
        remove="sudo pacman -R --noconfirm {name}",
        query="pacman -Q {name}",
        version_pattern=r"^{name}\s+(\S+)",
    ),
    "brew": ManagerCommands(
        install="brew install {package}",
        remove="brew uninstall {name}",
        query="brew list --versions {name}",
        version_pattern=r"^{name}\s+(.+)$",
        version_format="{name}@{version}",
    ),
}


# Characters that end a version component: 1.24 matches 1.24.0-2 but not 1.245
VERSION_SEPARATORS = ".-+~_"


def version_matches(declared: str, installed: str) -> bool:
    """Return True if installed is declared, or declared extended on a version boundary.

    An epoch prefix (``1:``) on the installed version is ignored unless the
    declared version carries one.
    """
    if ":" in installed and ":" not in declared:
        installed = installed.split(":", 1)[1]
    if installed == declared:
        return True
    return (
        installed.startswith(declared)
        and len(installed) > len(declared)
        and installed[len(declared)] in VERSION_SEPARATORS
    )


@dataclass
class PackageResult:
    """Outcome of one package within a batch."""

    package: PackageSpec
    success: bool
    output: str = ""
    error: Exception | None = None
    duration_seconds: float = 0.0


@dataclass
class BatchResult:
    """Outcome of a batch operation on one host."""

    operation: str
    host: str
    results: list[PackageResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[PackageResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[PackageResult]:
        return [r for r in self.results if not r.success]


class PackageManager:
    """Drives one package manager on one host."""

    def __init__(
        self,
        manager: str,
        transport: Transport,
        observer: ProgressObserver | None = None,
    ) -> None:
        commands = MANAGER_COMMANDS.get(manager)
        if commands is None:
            raise PackageOperationError(
                f"unsupported package manager '{manager}'. "
                f"Supported: {sorted(MANAGER_COMMANDS)}"
            )
        self.manager = manager
        self.commands = commands
        self._transport = transport
        self._observer = observer or ProgressObserver()

    @property
    def host(self) -> str:
        return self._transport.host.name

    def package_argument(self, package: PackageSpec) -> str:
        """Return the install argument, pinned to a version when one is declared."""
        if package.version and package.version != "latest":
            return shlex.quote(
                self.commands.version_format.format(name=package.name, version=package.version)
            )
        return shlex.quote(package.name)

    def _render(self, template: str, package: PackageSpec) -> str:
        return template.format(
            package=self.package_argument(package),
            name=shlex.quote(package.name),
        )

    async def install(self, packages: list[PackageSpec]) -> BatchResult:
        """Install packages, tolerating partial failure."""
        return await self._run_batch("install", self.commands.install, packages)

    async def remove(self, packages: list[PackageSpec]) -> BatchResult:
        """Remove packages, tolerating partial failure."""
        return await self._run_batch("remove", self.commands.remove, packages)

    async def exists(self, packages: list[PackageSpec]) -> bool:
        """Check whether every package is installed.

        A non-zero exit from the query command means "not installed"; a pinned
        package also needs an installed version matching the declared one, read
        from the manager's version field. Transport failures (timeouts, lost
        connections) propagate.
        """
        found = 0
        for package in packages:
            command = self._render(self.commands.query, package)
            self._observer.command(self.host, command)
            result = await self._transport.run(command, check=False)
            pinned = package.version and package.version != "latest"
            if result.ok and (
                not pinned
                or any(
                    version_matches(package.version, installed)
                    for installed in self.installed_versions(package, result.output)
                )
            ):
                found += 1
            else:
                logger.debug(
                    "Package not installed",
                    extra={"host": self.host, "package": package.name, "manager": self.manager},
                )
        return found == len(packages)

    def installed_versions(self, package: PackageSpec, output: str) -> list[str]:
        """Extract the installed version(s) of package from query output."""
        pattern = self.commands.version_pattern.format(name=re.escape(package.name))
        versions: list[str] = []
        for match in re.finditer(pattern, output, re.MULTILINE):
            versions.extend(match.group(1).split())
        return versions

    async def _run_batch(
        self,
        operation: str,
        template: str,
        packages: list[PackageSpec],
    ) -> BatchResult:
        batch = BatchResult(operation=operation, host=self.host)

        for package in packages:
            command = self._render(template, package)
            self._observer.command(self.host, command)
            started = time.monotonic()

            try:
                result = await self._transport.run(command)
            except TransportError as e:
                output = e.output if isinstance(e, CommandFailedError) else ""
                batch.results.append(
                    PackageResult(
                        package=package,
                        success=False,
                        output=output,
                        error=e,
                        duration_seconds=time.monotonic() - started,
                    )
                )
                self._observer.failure(
                    f"Failed to {operation} {package.name}: {e}",
                    host=self.host,
                    package=package.name,
                )
                if output:
                    self._observer.command_output(self.host, output)
                continue

            batch.results.append(
                PackageResult(
                    package=package,
                    success=True,
                    output=result.output,
                    duration_seconds=time.monotonic() - started,
                )
            )
            self._observer.success(
                f"{operation} {package.name} succeeded",
                host=self.host,
                package=package.name,
            )
            self._observer.command_output(self.host, result.output)

        logger.info(
            "Package batch complete",
            extra={
                "host": self.host,
                "operation": operation,
                "manager": self.manager,
                "succeeded": len(batch.succeeded),
                "failed": len(batch.failed),
            },
        )

        if packages and len(batch.failed) == len(packages):
            raise PackageOperationError(
                f"all package {operation} operations failed on host {self.host}: "
                + "; ".join(f"{r.package.name}: {r.error}" for r in batch.failed)
            )

        if batch.failed:
            self._observer.warning(
                f"{len(batch.failed)} of {len(packages)} package {operation} operations failed",
                host=self.host,
                failed_packages=[r.package.name for r in batch.failed],
            )

        return batch
