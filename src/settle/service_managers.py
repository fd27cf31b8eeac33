"""Service manager drivers (systemd, openrc)."""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass

from .progress import ProgressObserver
from .transport import CommandFailedError, Transport

logger = logging.getLogger(__name__)


class ServiceOperationError(Exception):
    """Raised when a service cannot be brought into its desired state."""

    pass


@dataclass(frozen=True)
class ServiceCommands:
    """Command templates for one init system. ``{name}`` is the quoted unit name."""

    start: str
    stop: str
    enable: str
    disable: str
    is_active: str
    is_enabled: str


SERVICE_COMMANDS: dict[str, ServiceCommands] = {
    "systemd": ServiceCommands(
        start="sudo systemctl start {name}",
        stop="sudo systemctl stop {name}",
        enable="sudo systemctl enable {name}",
        disable="sudo systemctl disable {name}",
        is_active="systemctl is-active --quiet {name}",
        is_enabled="systemctl is-enabled --quiet {name}",
    ),
    "openrc": ServiceCommands(
        start="sudo rc-service {name} start",
        stop="sudo rc-service {name} stop",
        enable="sudo rc-update add {name} default",
        disable="sudo rc-update del {name} default",
        is_active="rc-service {name} status",
        is_enabled="rc-update show default | grep -qw {name}",
    ),
}


class ServiceManager:
    """Brings one service on one host into a declared state."""

    def __init__(
        self,
        manager: str,
        transport: Transport,
        observer: ProgressObserver | None = None,
    ) -> None:
        commands = SERVICE_COMMANDS.get(manager)
        if commands is None:
            raise ServiceOperationError(
                f"unsupported service manager '{manager}'. "
                f"Supported: {sorted(SERVICE_COMMANDS)}"
            )
        self.manager = manager
        self.commands = commands
        self._transport = transport
        self._observer = observer or ProgressObserver()

    @property
    def host(self) -> str:
        return self._transport.host.name

    async def _probe(self, template: str, name: str) -> bool:
        command = template.format(name=shlex.quote(name))
        self._observer.command(self.host, command)
        result = await self._transport.run(command, check=False)
        return result.ok

    async def _change(self, template: str, name: str) -> None:
        command = template.format(name=shlex.quote(name))
        self._observer.command(self.host, command)
        try:
            result = await self._transport.run(command)
        except CommandFailedError as e:
            self._observer.command_output(self.host, e.output)
            raise ServiceOperationError(
                f"service {name} on {self.host}: {e}"
            ) from e
        self._observer.command_output(self.host, result.output)

    async def is_active(self, name: str) -> bool:
        return await self._probe(self.commands.is_active, name)

    async def is_enabled(self, name: str) -> bool:
        return await self._probe(self.commands.is_enabled, name)

    async def ensure(self, name: str, state: str) -> bool:
        """Converge the service to state; return True if anything changed.

        running: started. stopped: stopped. enabled: enabled at boot and
        started. disabled: stopped and removed from boot.
        """
        changed = False

        match state:
            case "running":
                if not await self.is_active(name):
                    await self._change(self.commands.start, name)
                    changed = True
            case "stopped":
                if await self.is_active(name):
                    await self._change(self.commands.stop, name)
                    changed = True
            case "enabled":
                if not await self.is_enabled(name):
                    await self._change(self.commands.enable, name)
                    changed = True
                if not await self.is_active(name):
                    await self._change(self.commands.start, name)
                    changed = True
            case "disabled":
                if await self.is_active(name):
                    await self._change(self.commands.stop, name)
                    changed = True
                if await self.is_enabled(name):
                    await self._change(self.commands.disable, name)
                    changed = True
            case _:
                raise ServiceOperationError(f"unknown service state '{state}' for {name}")

        logger.info(
            "Service converged",
            extra={
                "host": self.host,
                "service": name,
                "state": state,
                "changed": changed,
            },
        )
        return changed

    async def remove(self, name: str) -> None:
        """Stop the service and remove it from boot."""
        await self.ensure(name, "disabled")
