"""Concurrent SSH connectivity probe.

Every selected host is probed in its own task; results are collected with
asyncio.gather. The probe shares no state with planning or execution.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from .models import HostSpec
from .progress import ProgressObserver
from .transport import TransportError, TransportFactory

logger = logging.getLogger(__name__)


@dataclass
class PingResult:
    """Reachability of one host."""

    host: str
    success: bool
    error: str = ""
    duration_seconds: float = 0.0


@dataclass
class PingReport:
    """Aggregated probe results in host declaration order."""

    results: list[PingResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def all_reachable(self) -> bool:
        return self.failure_count == 0


def filter_hosts(
    hosts: list[HostSpec],
    name: str | None = None,
    group: str | None = None,
) -> list[HostSpec]:
    """Select hosts by exact name and/or group."""
    return [
        h
        for h in hosts
        if (not name or h.name == name) and (not group or h.group == group)
    ]


async def ping_host(
    host: HostSpec,
    transport_factory: TransportFactory,
    observer: ProgressObserver | None = None,
) -> PingResult:
    """Open and close a connection to one host."""
    observer = observer or ProgressObserver()
    started = time.monotonic()
    transport = transport_factory(host)

    try:
        async with transport:
            pass
    except TransportError as e:
        observer.failure(f"Failed to ping {host.name}: {e}", host=host.name)
        return PingResult(
            host=host.name,
            success=False,
            error=str(e),
            duration_seconds=time.monotonic() - started,
        )

    observer.success(f"Successfully pinged {host.name}", host=host.name)
    return PingResult(host=host.name, success=True, duration_seconds=time.monotonic() - started)


async def ping_hosts(
    hosts: list[HostSpec],
    transport_factory: TransportFactory,
    observer: ProgressObserver | None = None,
) -> PingReport:
    """Probe every host concurrently."""
    observer = observer or ProgressObserver()
    observer.task("ping", host_count=len(hosts))

    results = await asyncio.gather(
        *(ping_host(host, transport_factory, observer) for host in hosts)
    )

    report = PingReport(results=list(results))
    observer.summary(report.success_count, report.failure_count)
    return report
