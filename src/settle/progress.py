"""Structured progress notifications.

The observer is a pure sink: it formats task, resource and command events
and hands them to the logging system. It never raises and never influences
control flow.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class ProgressObserver:
    """Emits structured progress events through the ``settle.progress`` logger."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def task(self, name: str, **context: Any) -> None:
        """Announce the start of a top-level task (plan, apply, clean, ping)."""
        self._log.info("TASK [%s]", name, extra={"event": "task", "task": name, **context})

    def resource_start(self, resource_id: str, action: str, host: str | None = None) -> None:
        self._log.info(
            "%s %s",
            action,
            resource_id,
            extra={
                "event": "resource_start",
                "resource_id": resource_id,
                "action": action,
                "host": host,
            },
        )

    def command(self, host: str, command: str) -> None:
        self._log.debug(
            "[%s] $ %s",
            host,
            command,
            extra={"event": "command", "host": host, "command": command},
        )

    def command_output(self, host: str, output: str) -> None:
        lines = [line for line in output.strip().splitlines() if line.strip()]
        if not lines:
            return
        self._log.debug(
            "[%s] %s",
            host,
            "\n".join(lines),
            extra={"event": "command_output", "host": host, "line_count": len(lines)},
        )

    def success(self, message: str, **context: Any) -> None:
        self._log.info(message, extra={"event": "success", **context})

    def failure(self, message: str, **context: Any) -> None:
        self._log.error(message, extra={"event": "failure", **context})

    def warning(self, message: str, **context: Any) -> None:
        self._log.warning(message, extra={"event": "warning", **context})

    def summary(self, succeeded: int, failed: int, **context: Any) -> None:
        self._log.info(
            "Summary: %d succeeded, %d failed",
            succeeded,
            failed,
            extra={"event": "summary", "succeeded": succeeded, "failed": failed, **context},
        )
