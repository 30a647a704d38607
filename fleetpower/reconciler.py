"""Reconciliation loop.

Two independent periodic loops drive the fleet: detection observes every
node's actual state, reconciliation moves nodes whose current state differs
from the desired one. Two slower loops sample resources and discover
hypervisor guests. Each pass fans out one task per node; a failure on one
node is logged and never affects another.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

from fleetpower import metrics
from fleetpower.actuator import ActuationResult, PowerActuator
from fleetpower.async_tasks import TaskRegistry, safe_create_task
from fleetpower.config import Settings, settings
from fleetpower.detector import LivenessDetector
from fleetpower.discovery import GuestDiscovery
from fleetpower.errors import NodeNotFoundError
from fleetpower.models import Action, Node, Service, utcnow
from fleetpower.probe import CapabilityProbe
from fleetpower.state import ActionType, Initiator, PowerState, SystemType
from fleetpower.state_machine import PowerStateMachine
from fleetpower.storage import NodeStore
from fleetpower.timing import AsyncTimedOperation


@dataclass
class NodeUpdate:
    """State-change notification published after each node check."""
    node_id: str
    state: PowerState
    services: list[Service] = field(default_factory=list)
    node: Node | None = None


class ReconciliationLoop:
    """Periodic detection and convergence of node power states."""

    def __init__(
        self,
        store: NodeStore,
        detector: LivenessDetector,
        actuator: PowerActuator,
        probe: CapabilityProbe,
        discovery: GuestDiscovery | None = None,
        config: Settings | None = None,
        logger: logging.Logger | None = None,
        clock=utcnow,
    ):
        self.store = store
        self.detector = detector
        self.actuator = actuator
        self.probe = probe
        self.discovery = discovery
        self.config = config or settings
        self._log = logger or logging.getLogger(__name__)
        self._clock = clock
        self._updates: asyncio.Queue[NodeUpdate] = asyncio.Queue(maxsize=self.config.update_queue_size)
        self._tasks = TaskRegistry(self._log)
        self._last_system_check: dict[str, datetime] = {}
        self._stopping = asyncio.Event()
        self._running = False

    @property
    def updates(self) -> asyncio.Queue[NodeUpdate]:
        return self._updates

    @property
    def running(self) -> bool:
        return self._running

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def start(self) -> None:
        """Launch the background loops. Must be called from a running event loop."""
        if self._running:
            return
        self._running = True
        self._stopping.clear()
        loops = {
            "detection": (self.config.update_interval, self.check_all),
            "reconciliation": (self.config.reconcile_interval, self.reconcile_all),
            "system_check": (self.config.system_check_interval, self.system_check_all),
        }
        if self.discovery is not None:
            loops["guest_discovery"] = (self.config.vm_discovery_interval, self.discover_all)

        for name, (interval, work) in loops.items():
            task = safe_create_task(self._run_periodic(name, interval, work), name=name, log=self._log)
            self._tasks.register(task, name)
        self._log.info(
            f"Reconciliation loop started (detect: {self.config.update_interval}s, "
            f"reconcile: {self.config.reconcile_interval}s)"
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._stopping.set()
        await self._tasks.cancel_all()
        self._running = False
        self._log.info("Reconciliation loop stopped")

    async def _run_periodic(self, name: str, interval: float, work) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                async with AsyncTimedOperation(
                    histogram=metrics.loop_duration,
                    labels={"loop": name, "status": "auto"},
                    log_event="loop_pass",
                    log_level=logging.DEBUG,
                    logger=self._log,
                ):
                    await work()
            except asyncio.CancelledError:
                self._log.info(f"{name} loop stopped")
                break
            except Exception as e:
                self._log.error(f"Error in {name} loop: {e}")

    async def _fan_out(self, label: str, nodes: list[Node], work) -> None:
        """Run ``work(node)`` for every node concurrently, logging failures."""
        if not nodes:
            return
        results = await asyncio.gather(*(work(node) for node in nodes), return_exceptions=True)
        for node, result in zip(nodes, results):
            if isinstance(result, BaseException):
                self._log.error(f"{label} failed for node {node.name}: {result}")

    # -----------------------------------------------------------------------
    # Detection
    # -----------------------------------------------------------------------

    async def check_all(self) -> None:
        nodes = self.store.get_all()
        await self._fan_out("State check", nodes, self.check_node)

        counts = Counter(node.current_state for node in self.store.get_all())
        for state in PowerState:
            metrics.nodes_by_state.labels(state=state.value).set(counts.get(state, 0))

    async def check_node(self, node: Node) -> PowerState:
        """Observe one node, persist what changed, and publish a NodeUpdate."""
        if node.is_guest:
            new_state = await self.detector.determine_guest_state(node)
        else:
            new_state = await self.detector.determine_state(node)
        if new_state == PowerState.ON and node.hostname and self.config.service_discovery:
            services = await self.detector.scan_services_with_discovery(node.hostname, node.id, node.services)
        else:
            services = await self.detector.scan_services(node.hostname, node.services)

        if new_state != node.current_state:
            self._log.info(f"Node {node.name} state changed: {node.current_state.value} -> {new_state.value}")
            metrics.state_changes_total.labels(state=new_state.value).inc()
            self.store.update_state(node.id, new_state)

        if services:
            snapshot = self.store.update_fields(node.id, services=services)
        else:
            snapshot = self.store.get(node.id)

        self._publish(NodeUpdate(node_id=node.id, state=new_state, services=services, node=snapshot))
        return new_state

    def _publish(self, update: NodeUpdate) -> None:
        try:
            self._updates.put_nowait(update)
        except asyncio.QueueFull:
            metrics.dropped_updates_total.inc()
            self._log.debug(f"Update queue full, dropping update for {update.node_id}")

    async def force_check(self) -> None:
        await self.check_all()

    # -----------------------------------------------------------------------
    # Reconciliation
    # -----------------------------------------------------------------------

    def needs_initialization(self, node: Node) -> bool:
        """Whether the capability probe should run for ``node`` this pass.

        Guests get their data from the hypervisor and are never probed.
        Uninitialised nodes, init_failed ones included, are probed on every
        pass; initialised ones once their last success is older than
        ``init_check_interval``.
        """
        if node.is_guest:
            return False
        if not node.initialized:
            return True
        if node.last_successful_init is None:
            return True
        age = (self._clock() - node.last_successful_init).total_seconds()
        return age >= self.config.init_check_interval

    async def reconcile_all(self) -> None:
        pending = [
            node
            for node in self.store.get_all()
            if node.current_state != node.desired_state or self.needs_initialization(node)
        ]
        await self._fan_out("Reconciliation", pending, self.reconcile_node)

    async def reconcile_node(self, node: Node) -> ActuationResult | None:
        """Initialise ``node`` if needed, then act on any state mismatch.

        Nodes that are off or suspended cannot be probed and go straight to
        power actuation. A failed probe ends the pass for the node unless
        the pending action is a wake, which needs no remote shell.
        """
        self._log.debug(
            f"Reconciling {node.name}: current={node.current_state.value}, "
            f"desired={node.desired_state.value}, initialized={node.initialized}"
        )

        if self.needs_initialization(node) and node.current_state not in (PowerState.OFF, PowerState.SUSPENDED):
            result = await self.probe.initialize(node.id)
            node = self.store.get(node.id)
            if not result.initialized:
                pending = PowerStateMachine.get_reconcile_action(
                    node.current_state, node.desired_state, node.is_guest
                )
                if pending != "wake":
                    return None

        action = PowerStateMachine.get_reconcile_action(node.current_state, node.desired_state, node.is_guest)
        if action is None:
            return None

        self._log.info(
            f"Reconciling {node.name}: {action} ({node.current_state.value} -> {node.desired_state.value})"
        )
        actuate = getattr(self.actuator, action)
        result = await actuate(node.id, Initiator.RECONCILER)

        try:
            self.store.append_action(
                node.id,
                Action(
                    action=ActionType.RECONCILE,
                    success=result.success,
                    error=result.error or "",
                    initiator=Initiator.RECONCILER,
                ),
            )
        except NodeNotFoundError:
            self._log.warning(f"Node {node.id} removed during reconciliation")
        return result

    async def force_reconcile(self) -> None:
        await self.reconcile_all()

    # -----------------------------------------------------------------------
    # Resource sampling and discovery
    # -----------------------------------------------------------------------

    async def system_check_all(self) -> None:
        now = self._clock()
        due = []
        for node in self.store.get_all():
            if node.is_guest or node.current_state != PowerState.ON or not node.initialized:
                continue
            last = self._last_system_check.get(node.id)
            if last is not None and (now - last).total_seconds() < self.config.system_check_interval:
                continue
            self._last_system_check[node.id] = now
            due.append(node)
        await self._fan_out("System check", due, lambda n: self.probe.sample_resources(n.id))

    async def discover_all(self) -> None:
        if self.discovery is None:
            return
        hosts = [
            node
            for node in self.store.get_all()
            if node.initialized
            and not node.is_guest
            and node.system_type == SystemType.PROXMOX
            and node.current_state == PowerState.ON
        ]
        await self._fan_out("Guest discovery", hosts, lambda h: self.discovery.discover(h.id, self._stopping))

    # -----------------------------------------------------------------------
    # Query and command surface
    # -----------------------------------------------------------------------

    def get_node(self, node_id: str) -> Node:
        return self.store.get(node_id)

    def list_nodes(self) -> list[Node]:
        return self.store.get_all()

    def _set_desired(self, node_id: str, state: PowerState) -> None:
        self.store.update_fields(node_id, desired_state=state)

    async def _command(self, node_id: str, desired: PowerState, action: str) -> tuple[bool, str]:
        try:
            self._set_desired(node_id, desired)
        except NodeNotFoundError as e:
            return False, str(e)
        result = await getattr(self.actuator, action)(node_id, Initiator.MANUAL)
        return result.success, result.message

    async def wake_node(self, node_id: str) -> tuple[bool, str]:
        return await self._command(node_id, PowerState.ON, "wake")

    async def suspend_node(self, node_id: str) -> tuple[bool, str]:
        return await self._command(node_id, PowerState.SUSPENDED, "suspend")

    async def shutdown_node(self, node_id: str) -> tuple[bool, str]:
        return await self._command(node_id, PowerState.OFF, "shutdown")

    async def stop_node(self, node_id: str) -> tuple[bool, str]:
        return await self._command(node_id, PowerState.OFF, "stop")
