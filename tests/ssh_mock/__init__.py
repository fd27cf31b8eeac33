"""SSH Mock for Integration Testing.

This module provides an in-memory Transport that enables pipeline testing
without real hosts.

Key Features:
- Records every command per host in execution order
- Scriptable responses (exit status and output by command substring)
- Error injection for connection failures and command timeouts
- Hanging commands for cancellation tests
- Patches the reconciler's SSH transport factory

Usage:
    from ssh_mock import MockHostContext

    with MockHostContext() as ctx:
        ctx.respond("dpkg -s nginx", exit_status=1)

        reconciler = Reconciler(config)
        await reconciler.apply()

        assert ctx.ran("apt-get install -y nginx")
"""

from .context import CommandRule, MockHostContext
from .transport import MockTransport

__all__ = [
    "CommandRule",
    "MockHostContext",
    "MockTransport",
]
