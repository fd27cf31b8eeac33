"""Remote command transport over SSH.

A Transport is bound to one host. It opens a connection, runs commands with
a bounded read timeout and closes the connection. Remote processes that
outlive their timeout, or whose caller is cancelled, are killed.

SECURITY:
- Private keys with group/other permission bits are rejected
- Host keys are verified against known_hosts when strict mode is enabled
- Command content is logged at DEBUG only
"""

from __future__ import annotations

import asyncio
import logging
import stat
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Any

import asyncssh

from .config import (
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_CONNECT_TIMEOUT_SECONDS,
    MAX_KEY_FILE_SIZE_BYTES,
)
from .models import HostSpec

logger = logging.getLogger(__name__)

DEFAULT_KEY_NAMES = ("id_rsa", "id_ed25519", "id_ecdsa")


class TransportError(Exception):
    """Base class for transport failures."""

    pass


class TransportConnectionError(TransportError):
    """Raised when a connection cannot be established."""

    pass


class CommandFailedError(TransportError):
    """Raised when a remote command exits non-zero."""

    def __init__(self, command: str, exit_status: int, output: str) -> None:
        self.command = command
        self.exit_status = exit_status
        self.output = output
        super().__init__(f"command exited with status {exit_status}: {command}")


class CommandTimeoutError(TransportError):
    """Raised when a remote command does not finish within its timeout."""

    def __init__(self, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(f"command timed out after {timeout}s: {command}")


@dataclass(frozen=True)
class CommandResult:
    """Combined output and exit status of a remote command."""

    command: str
    output: str
    exit_status: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class Transport(ABC):
    """Command execution capability bound to a single host."""

    def __init__(
        self,
        host: HostSpec,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.host = host
        self.command_timeout = command_timeout

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection.

        Raises:
            TransportConnectionError: If the host cannot be reached or authenticated.
        """

    @abstractmethod
    async def run(
        self,
        command: str,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run a command and return its combined stdout/stderr.

        Args:
            command: Shell command line.
            timeout: Read timeout in seconds (defaults to command_timeout).
            check: Raise CommandFailedError on a non-zero exit status.

        Raises:
            CommandFailedError: If check is set and the command failed.
            CommandTimeoutError: If the command exceeded the timeout.
            asyncio.CancelledError: If the caller was cancelled; the remote
                process has been killed.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""

    async def __aenter__(self) -> Transport:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


TransportFactory = Callable[[HostSpec], Transport]


def validate_key_file(key_path: Path) -> None:
    """Reject unreadable, oversized or world/group accessible private keys.

    Raises:
        TransportConnectionError: If the key file fails validation.
    """
    try:
        info = key_path.stat()
    except OSError as e:
        raise TransportConnectionError(f"failed to stat key file {key_path}: {e}") from e

    if stat.S_IMODE(info.st_mode) & 0o077:
        raise TransportConnectionError(
            f"key file has insecure permissions {oct(stat.S_IMODE(info.st_mode))}: {key_path}"
        )

    if info.st_size > MAX_KEY_FILE_SIZE_BYTES:
        raise TransportConnectionError(f"key file too large: {info.st_size} bytes")


def find_default_key(ssh_dir: Path | None = None) -> Path | None:
    """Return the first default private key found in ~/.ssh, if any."""
    directory = ssh_dir or Path.home() / ".ssh"
    for name in DEFAULT_KEY_NAMES:
        candidate = directory / name
        if candidate.exists():
            return candidate
    return None


class SSHTransport(Transport):
    """Transport implementation on asyncssh."""

    def __init__(
        self,
        host: HostSpec,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        strict_host_keys: bool = False,
    ) -> None:
        super().__init__(host, command_timeout)
        self.connect_timeout = connect_timeout
        self.strict_host_keys = strict_host_keys
        self._conn: asyncssh.SSHClientConnection | None = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def _known_hosts(self) -> str | None:
        if not self.strict_host_keys:
            return None
        default_path = Path.home() / ".ssh" / "known_hosts"
        if not default_path.exists():
            raise TransportConnectionError(
                f"strict host key checking enabled but {default_path} does not exist"
            )
        return str(default_path)

    def _build_options(self) -> dict[str, Any]:
        host = self.host
        options: dict[str, Any] = {
            "host": host.address,
            "known_hosts": self._known_hosts(),
        }

        # Without an explicit hostname the name is an alias resolved by ~/.ssh/config
        if host.hostname:
            options["port"] = host.port
        if host.user:
            options["username"] = host.user

        key_path = Path(host.key_file) if host.key_file else find_default_key()
        if key_path is not None:
            validate_key_file(key_path)
            options["client_keys"] = [str(key_path)]

        return options

    async def connect(self) -> None:
        if self._conn is not None:
            return

        options = self._build_options()
        logger.debug(
            "Opening SSH connection",
            extra={
                "host": self.host.name,
                "address": options["host"],
                "port": options.get("port"),
                "user": options.get("username"),
            },
        )

        try:
            self._conn = await asyncio.wait_for(
                asyncssh.connect(**options),
                timeout=self.connect_timeout,
            )
        except TimeoutError as e:
            raise TransportConnectionError(
                f"connection to {self.host.name} timed out after {self.connect_timeout}s"
            ) from e
        except (OSError, asyncssh.Error) as e:
            raise TransportConnectionError(
                f"failed to connect to {self.host.name}: {e}"
            ) from e
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
            # Malformed or passphrase protected private key
            raise TransportConnectionError(
                f"failed to load private key for {self.host.name}: {e}"
            ) from e

    async def run(
        self,
        command: str,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        if self._conn is None:
            await self.connect()
        assert self._conn is not None

        limit = timeout if timeout is not None else self.command_timeout
        logger.debug(
            "Running remote command",
            extra={"host": self.host.name, "command": command, "timeout": limit},
        )

        try:
            process = await self._conn.create_process(command, stderr=asyncssh.STDOUT)
        except asyncssh.Error as e:
            raise TransportConnectionError(
                f"failed to open session on {self.host.name}: {e}"
            ) from e

        try:
            completed = await asyncio.wait_for(process.wait(), timeout=limit)
        except TimeoutError as e:
            process.kill()
            logger.warning(
                "Remote command timed out, process killed",
                extra={"host": self.host.name, "timeout": limit},
            )
            raise CommandTimeoutError(command, limit) from e
        except asyncio.CancelledError:
            process.kill()
            logger.warning(
                "Remote command cancelled, process killed",
                extra={"host": self.host.name},
            )
            raise

        output = completed.stdout or ""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")

        # A process killed by a signal has no exit status
        exit_status = completed.exit_status if completed.exit_status is not None else -1

        result = CommandResult(command=command, output=output, exit_status=exit_status)
        if check and not result.ok:
            raise CommandFailedError(command, exit_status, output)
        return result

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            conn.close()
            await conn.wait_closed()
        except (OSError, asyncssh.Error) as e:
            raise TransportConnectionError(
                f"failed to close connection to {self.host.name}: {e}"
            ) from e


def ssh_transport_factory(
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    strict_host_keys: bool = False,
) -> TransportFactory:
    """Build a factory creating SSHTransport instances with shared settings."""

    def factory(host: HostSpec) -> Transport:
        return SSHTransport(
            host,
            command_timeout=command_timeout,
            connect_timeout=connect_timeout,
            strict_host_keys=strict_host_keys,
        )

    return factory
