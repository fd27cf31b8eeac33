"""Plan execution.

Actions run strictly in plan order on one event loop. Every outcome is
written to the state store before the next action starts. The first failure
halts the run; completed actions are not rolled back.

CANCELLATION:
When the optional cancel_event is set, the in-flight action is cancelled
(the transport kills the remote process), recorded as failed, and the run
halts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .models import HostSpec
from .planner import Plan
from .progress import ProgressObserver
from .resources import Action, ActionType, HostResource, Resource, ResourceContext
from .state import PersistenceError, StateStore
from .transport import TransportError, TransportFactory

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """Raised when an action cannot be carried out."""

    def __init__(self, message: str, resource_id: str | None = None) -> None:
        self.resource_id = resource_id
        super().__init__(message)


class ActionCancelledError(ExecutionError):
    """Raised when an in-flight action is cancelled."""

    pass


@dataclass
class ExecutionAction:
    """Outcome of one action."""

    action: Action
    started_at: datetime
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.completed_at is not None and self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.action.resource_id,
            "type": self.action.type.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class ExecutionResult:
    """Outcome of a plan execution."""

    plan: Plan
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    actions: list[ExecutionAction] = field(default_factory=list)
    success: bool = False
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    error: Exception | None = None

    @property
    def success_count(self) -> int:
        return sum(1 for a in self.actions if a.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for a in self.actions if a.error is not None)

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or self.failed_at
        if end is None:
            return 0.0
        return (end - self.started_at).total_seconds()


class Executor:
    """Applies plans against hosts through a transport factory."""

    def __init__(
        self,
        state: StateStore,
        transport_factory: TransportFactory,
        hosts: list[HostSpec] | None = None,
        observer: ProgressObserver | None = None,
    ) -> None:
        self.state = state
        self.transport_factory = transport_factory
        self.hosts: list[HostSpec] = list(hosts or [])
        self.observer = observer or ProgressObserver()

    def set_hosts(self, hosts: list[HostSpec]) -> None:
        self.hosts = list(hosts)

    def _bind_host(self, resource: Resource) -> HostSpec:
        """Pick the host a resource runs on.

        Raises:
            ExecutionError: If the pinned host is unknown or no hosts exist.
        """
        if isinstance(resource, HostResource):
            return resource.spec

        if resource.host_name is not None:
            for host in self.hosts:
                if host.name == resource.host_name:
                    return host
            raise ExecutionError(
                f"resource {resource.id}: host '{resource.host_name}' is not declared",
                resource.id,
            )

        if not self.hosts:
            raise ExecutionError(f"resource {resource.id}: no hosts available", resource.id)
        return self.hosts[0]

    async def execute(
        self,
        plan: Plan,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Run every action of the plan in order, halting on the first failure.

        Raises:
            DependencyError: If the plan's graph fails validation.
            PersistenceError: If a failure cannot be recorded in the state store.
        """
        plan.validate_plan()

        result = ExecutionResult(plan=plan)
        self.observer.task("execute", action_count=len(plan))

        for action in plan.actions:
            outcome = ExecutionAction(action=action, started_at=datetime.now(UTC))
            result.actions.append(outcome)

            try:
                await self._execute_action(plan, action, cancel_event)
            except ExecutionError as e:
                now = datetime.now(UTC)
                outcome.failed_at = now
                outcome.error = e
                result.failed_at = now
                result.error = e
                self.observer.failure(str(e), resource_id=action.resource_id)
                break

            outcome.completed_at = datetime.now(UTC)
        else:
            result.success = True
            result.completed_at = datetime.now(UTC)

        self.observer.summary(
            result.success_count,
            result.failure_count,
            duration_seconds=result.duration_seconds,
        )
        return result

    async def _execute_action(
        self,
        plan: Plan,
        action: Action,
        cancel_event: asyncio.Event | None,
    ) -> None:
        resource = plan.graph.get_resource(action.resource_id)
        if resource is None:
            raise ExecutionError(
                f"resource {action.resource_id} not found in graph", action.resource_id
            )

        if action.type == ActionType.NO_OP:
            logger.debug("Resource up to date", extra={"resource_id": resource.id})
            return

        try:
            host = self._bind_host(resource)
        except ExecutionError as e:
            self.state.mark_failed(resource, str(e))
            raise

        ctx = ResourceContext(
            host=host,
            transport_factory=self.transport_factory,
            observer=self.observer,
        )
        self.observer.resource_start(resource.id, action.type.value, host.name)

        try:
            await self._run_cancellable(
                self._dispatch(resource, action, ctx), resource.id, cancel_event
            )
        except asyncio.CancelledError:
            self.state.mark_failed(resource, f"{action.type.value} {resource.id} cancelled")
            raise
        except ExecutionError as e:
            self.state.mark_failed(resource, str(e))
            raise
        except Exception as e:
            message = f"{action.type.value} {resource.id} failed: {e}"
            self.state.mark_failed(resource, message)
            raise ExecutionError(message, resource.id) from e
        finally:
            await self._close_context(ctx, resource.id)

        try:
            self.state.mark_applied(resource)
        except PersistenceError as e:
            raise ExecutionError(
                f"resource {resource.id}: failed to persist state: {e}", resource.id
            ) from e

        self.observer.success(
            f"{action.type.value} {resource.id} complete",
            resource_id=resource.id,
            host=host.name,
        )

    async def _close_context(self, ctx: ResourceContext, resource_id: str) -> None:
        # The action outcome stands; a failed close is only reported
        try:
            await ctx.close()
        except TransportError as e:
            logger.warning(
                "Failed to close connection",
                extra={"resource_id": resource_id, "host": ctx.host_name, "error": str(e)},
            )

    async def _dispatch(self, resource: Resource, action: Action, ctx: ResourceContext) -> None:
        match action.type:
            case ActionType.CREATE | ActionType.UPDATE:
                await resource.apply(ctx)
            case ActionType.DELETE:
                await resource.destroy(ctx)
            case _:
                raise ExecutionError(
                    f"resource {resource.id}: unsupported action {action.type.value}",
                    resource.id,
                )

    async def _run_cancellable(
        self,
        operation: Coroutine[Any, Any, None],
        resource_id: str,
        cancel_event: asyncio.Event | None,
    ) -> None:
        if cancel_event is None:
            await operation
            return

        task = asyncio.create_task(operation)
        waiter = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            task.result()
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.warning("Action cancelled", extra={"resource_id": resource_id})
        raise ActionCancelledError(f"resource {resource_id}: cancelled", resource_id)
