"""Power actuator: turns wake/suspend/shutdown/stop intents into backend calls.

Every attempt, successful or not, ends as exactly one Action in the node's
history. Failures are returned in the ActuationResult; they are never
raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from fleetpower import metrics
from fleetpower.backends.base import BackendResult, PowerBackend
from fleetpower.errors import FleetPowerError, NodeNotFoundError, TopologyError
from fleetpower.models import Action, Node
from fleetpower.state import ActionType, Initiator, PowerState
from fleetpower.state_machine import PowerStateMachine
from fleetpower.storage import NodeStore
from fleetpower.timing import AsyncTimedOperation


@dataclass
class ActuationResult:
    """Outcome of one actuation request."""
    success: bool
    node_id: str
    action: ActionType
    new_state: PowerState | None = None
    error: str | None = None

    @property
    def message(self) -> str:
        if self.success:
            return f"{self.action.value} succeeded"
        return self.error or f"{self.action.value} failed"


class PowerActuator:
    """Dispatch power intents to the backend matching each node's variant."""

    def __init__(
        self,
        store: NodeStore,
        physical: PowerBackend,
        guest: PowerBackend,
        *,
        parent_settle_delay: float = 5.0,
        hypervisor_settle_delay: float = 10.0,
        logger: logging.Logger | None = None,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.physical = physical
        self.guest = guest
        self.parent_settle_delay = parent_settle_delay
        self.hypervisor_settle_delay = hypervisor_settle_delay
        self._log = logger or logging.getLogger(__name__)
        self._sleep = sleep

    def select_backend(self, node: Node) -> PowerBackend:
        return self.guest if node.is_guest else self.physical

    def resolve_root(self, node: Node) -> Node:
        """Follow parent links to the top of the hierarchy.

        Raises:
            TopologyError: a parent is missing or the chain loops.
        """
        current = node
        visited: set[str] = set()
        while current.parent_id:
            if current.id in visited:
                raise TopologyError(f"circular parent reference detected starting from node {node.id}")
            visited.add(current.id)
            try:
                current = self.store.get(current.parent_id)
            except NodeNotFoundError as e:
                raise TopologyError(f"failed to get parent node {current.parent_id}: {e}") from e
        return current

    # -----------------------------------------------------------------------
    # Intents
    # -----------------------------------------------------------------------

    async def wake(self, node_id: str, initiator: Initiator = Initiator.MANUAL) -> ActuationResult:
        """Wake a node, waking its parent chain first when needed."""
        try:
            node = self.store.get(node_id)
        except NodeNotFoundError as e:
            return ActuationResult(False, node_id, ActionType.WAKE, error=str(e))

        self._log.info(f"Wake request for node: {node.name}")
        try:
            self.resolve_root(node)
        except TopologyError as e:
            return self._record(node, ActionType.WAKE, initiator, error=str(e))

        if node.parent_id:
            parent = self.store.get(node.parent_id)
            if parent.current_state != PowerState.ON:
                self._log.info(f"Waking parent node {parent.name} before {node.name}")
                parent_result = await self.wake(parent.id, initiator)
                if not parent_result.success:
                    return self._record(
                        node,
                        ActionType.WAKE,
                        initiator,
                        error=f"failed to wake parent node {parent.name}: {parent_result.error}",
                    )
                delay = self.hypervisor_settle_delay if node.is_guest else self.parent_settle_delay
                await self._sleep(delay)
            node = self.store.get(node_id)

        return await self._dispatch(node, ActionType.WAKE, initiator, PowerStateMachine.after_wake())

    async def suspend(self, node_id: str, initiator: Initiator = Initiator.MANUAL) -> ActuationResult:
        return await self._guarded(
            node_id,
            ActionType.SUSPEND,
            initiator,
            PowerStateMachine.can_suspend,
            "suspended",
        )

    async def shutdown(self, node_id: str, initiator: Initiator = Initiator.MANUAL) -> ActuationResult:
        return await self._guarded(
            node_id,
            ActionType.SHUTDOWN,
            initiator,
            PowerStateMachine.can_shutdown,
            "shut down",
        )

    async def stop(self, node_id: str, initiator: Initiator = Initiator.MANUAL) -> ActuationResult:
        return await self._guarded(
            node_id,
            ActionType.STOP,
            initiator,
            PowerStateMachine.can_stop,
            "stopped",
        )

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    async def _guarded(self, node_id, action, initiator, allowed, verb) -> ActuationResult:
        try:
            node = self.store.get(node_id)
        except NodeNotFoundError as e:
            return ActuationResult(False, node_id, action, error=str(e))

        self._log.info(f"{action.value.capitalize()} request for node: {node.name}")
        if not allowed(node.current_state):
            return self._record(
                node,
                action,
                initiator,
                error=f"node {node.name} cannot be {verb} from current state: {node.current_state.value}",
            )

        if action == ActionType.SUSPEND:
            new_state = PowerStateMachine.after_suspend()
        elif action == ActionType.SHUTDOWN:
            new_state = PowerStateMachine.after_shutdown(node.is_guest)
        else:
            new_state = PowerStateMachine.after_stop()
        return await self._dispatch(node, action, initiator, new_state)

    async def _dispatch(
        self,
        node: Node,
        action: ActionType,
        initiator: Initiator,
        new_state: PowerState,
    ) -> ActuationResult:
        backend = self.select_backend(node)
        handler = getattr(backend, action.value)

        async with AsyncTimedOperation(
            histogram=metrics.actuation_duration,
            labels={"action": action.value, "backend": backend.kind.value, "status": "auto"},
            log_event="actuation",
            log_extras={"node_id": node.id},
            logger=self._log,
        ) as timed:
            try:
                outcome: BackendResult = await handler(node)
            except FleetPowerError as e:
                timed.success = False
                self._log.error(f"Failed to {action.value} {node.name}: {e}")
                metrics.actuation_total.labels(action=action.value, backend=backend.kind.value, status="error").inc()
                return self._record(node, action, initiator, error=str(e))

            timed.success = outcome.success
            status = "success" if outcome.success else "error"
            metrics.actuation_total.labels(action=action.value, backend=backend.kind.value, status=status).inc()

        if not outcome.success:
            return self._record(node, action, initiator, error=outcome.error or f"{action.value} failed")

        self._log.info(f"{action.value} sent to {node.name}: {outcome.detail}")
        try:
            self.store.update_state(node.id, new_state)
        except NodeNotFoundError as e:
            self._log.error(f"Failed to update state for {node.name}: {e}")
        return self._record(node, action, initiator, new_state=new_state)

    def _record(
        self,
        node: Node,
        action: ActionType,
        initiator: Initiator,
        *,
        error: str | None = None,
        new_state: PowerState | None = None,
    ) -> ActuationResult:
        success = error is None
        try:
            self.store.append_action(
                node.id,
                Action(action=action, success=success, error=error or "", initiator=initiator),
            )
        except NodeNotFoundError as e:
            self._log.error(f"Failed to log {action.value} action for {node.name}: {e}")
        if not success:
            self._log.warning(f"{action.value} of {node.name} failed: {error}")
        return ActuationResult(success, node.id, action, new_state=new_state, error=error)
