"""Capability probe and initializer.

A node is probed while ``initialized`` is False. Only the SSH reachability
test is fatal; every later step is best effort and its error is collected
into the Action recorded for the attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fleetpower import metrics
from fleetpower.errors import CommandError, NodeNotFoundError
from fleetpower.models import Action, NetworkInterface, Node, SystemInfo, utcnow
from fleetpower.remote.commander import RemoteCommander
from fleetpower.state import ActionType, Initiator, PowerState, SystemType
from fleetpower.storage import NodeStore

# Tried in order when picking the wake address; matched as name prefixes
PREFERRED_INTERFACE_PREFIXES = ("eth0", "eno1", "enp", "ens")

# Never chosen as the primary wake interface
SKIPPED_INTERFACE_PREFIXES = ("docker", "veth", "br-", "virbr", "vmbr", "tap", "lo")

# Written by resource sampling and guest discovery while a probe may be running
SAMPLED_INFO_FIELDS = ("cpu_usage", "load_average", "memory_usage", "disk_usage", "network_usage", "guests")


@dataclass
class InitResult:
    """Outcome of one probe attempt."""
    node_id: str
    initialized: bool
    errors: list[str] = field(default_factory=list)

    @property
    def error(self) -> str:
        if not self.errors:
            return ""
        return f"Initialization errors: {self.errors}"


def select_primary_mac(interfaces: list[NetworkInterface]) -> tuple[str, str] | None:
    """Pick the (interface, MAC) pair most likely to receive a magic packet.

    Physical Ethernet-style names win; otherwise the first non-virtual
    interface with a MAC. IPv6 entries are ignored.
    """
    candidates = [i for i in interfaces if i.mac_address and not i.is_ipv6]
    for prefix in PREFERRED_INTERFACE_PREFIXES:
        for iface in candidates:
            if iface.name.startswith(prefix):
                return iface.name, iface.mac_address
    for iface in candidates:
        if iface.name.startswith(SKIPPED_INTERFACE_PREFIXES):
            continue
        return iface.name, iface.mac_address
    return None


class CapabilityProbe:
    """Identify a node's system family and wake capabilities over SSH."""

    def __init__(
        self,
        store: NodeStore,
        commander: RemoteCommander,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.commander = commander
        self._log = logger or logging.getLogger(__name__)

    async def initialize(self, node_id: str) -> InitResult:
        """Probe a node and record the outcome.

        Raises:
            NodeNotFoundError: ``node_id`` is not in the store.
        """
        attempt = self.store.get(node_id).init_retry_count + 1
        node = self.store.update_fields(node_id, init_retry_count=attempt, last_init_attempt=utcnow())
        self._log.info(f"Initializing node {node.name} (attempt {node.init_retry_count})")

        try:
            await self.commander.test_connection(node)
        except CommandError as e:
            return self._fail(node, e)

        errors: list[str] = []
        info = node.system_info.model_copy(deep=True) if node.system_info else SystemInfo()
        info.hostname = info.hostname or node.hostname

        try:
            info.type = await self.commander.detect_system_type(node)
        except CommandError as e:
            errors.append(f"system type detection failed: {e}")
            info.type = SystemType.UNKNOWN
        self._log.info(f"Detected system type for {node.name}: {info.type.value}")

        try:
            info.os_version = await self.commander.get_os_version(node, info.type)
        except CommandError as e:
            errors.append(f"OS version detection failed: {e}")

        try:
            info.system_id = await self.commander.get_system_id(node, info.type)
        except CommandError as e:
            errors.append(f"system ID detection failed: {e}")

        try:
            info.interfaces = await self.commander.get_network_interfaces(node, info.type)
        except CommandError as e:
            errors.append(f"network interface detection failed: {e}")

        mac = None
        if not node.mac_address:
            selected = select_primary_mac(info.interfaces)
            if selected is None:
                self._log.warning(f"No suitable MAC address found for Wake-on-LAN on {node.name}")
            else:
                iface, mac = selected
                self._log.info(f"Selected primary MAC address {mac} from {iface} on {node.name}")

        info.apply_capability_defaults()
        if info.type in (SystemType.LINUX, SystemType.PROXMOX):
            wol_error = await self._configure_wake_on_lan(node, info)
            if wol_error:
                errors.append(wol_error)
            info.wake_on_lan_support = info.wake_on_lan.supported

        return self._succeed(node, info, errors, mac)

    async def _configure_wake_on_lan(self, node: Node, info: SystemInfo) -> str:
        """Check WoL, arm it when supported but not armed, then re-check."""
        try:
            wol = await self.commander.check_wake_on_lan(node)
        except CommandError as e:
            return f"Wake-on-LAN check failed: {e}"

        previously_armed = info.wake_on_lan.armed
        info.wake_on_lan = wol
        if not wol.supported or wol.armed:
            return ""

        try:
            await self.commander.arm_wake_on_lan(node, wol.interfaces)
        except CommandError as e:
            info.wake_on_lan.armed = previously_armed
            return f"Wake-on-LAN arming failed: {e}"

        try:
            rechecked = await self.commander.check_wake_on_lan(node)
        except CommandError as e:
            return f"Wake-on-LAN re-check failed: {e}"
        # An interface that was armed stays armed even if the re-check misses it
        rechecked.armed = rechecked.armed or previously_armed
        info.wake_on_lan = rechecked
        self._log.info(f"Wake-on-LAN arming completed on {node.name}: armed={rechecked.armed}")
        return ""

    def _fail(self, node: Node, exc: CommandError) -> InitResult:
        self._log.warning(f"SSH connection test failed for {node.name}: {exc}")
        node = self.store.update_fields(node.id, initialized=False)
        if node.current_state != PowerState.INIT_FAILED:
            self.store.update_state(node.id, PowerState.INIT_FAILED)
        if node.system_info is None:
            self.store.set_system_info(node.id, SystemInfo())
        else:
            self.store.set_system_info(node.id, node.system_info)

        message = f"SSH connection test failed: {exc}"
        self.store.append_action(
            node.id,
            Action(action=ActionType.INITIALIZE, success=False, error=message, initiator=Initiator.SYSTEM),
        )
        metrics.initializations_total.labels(status="failed").inc()
        return InitResult(node.id, False, [message])

    def _succeed(self, node: Node, info: SystemInfo, errors: list[str], mac: str | None) -> InitResult:
        fields = {"initialized": True, "last_successful_init": utcnow()}
        if mac and not self.store.get(node.id).mac_address:
            fields["mac_address"] = mac
        node = self.store.update_fields(node.id, **fields)
        if node.current_state == PowerState.INIT_FAILED:
            self.store.update_state(node.id, PowerState.UNKNOWN)
        if node.system_info is not None:
            for attr in SAMPLED_INFO_FIELDS:
                setattr(info, attr, getattr(node.system_info, attr))
        self.store.set_system_info(node.id, info)

        result = InitResult(node.id, True, errors)
        self.store.append_action(
            node.id,
            Action(
                action=ActionType.INITIALIZE,
                success=not errors,
                error=result.error,
                initiator=Initiator.SYSTEM,
            ),
        )
        if errors:
            self._log.warning(f"Node {node.name} initialized with errors: {errors}")
            metrics.initializations_total.labels(status="partial").inc()
        else:
            self._log.info(f"Node {node.name} initialized successfully")
            metrics.initializations_total.labels(status="success").inc()
        return result

    async def sample_resources(self, node_id: str) -> None:
        """Refresh utilisation figures of an online Linux or Proxmox node.

        Each figure is sampled independently; failures are logged and the
        previous value kept.
        """
        try:
            node = self.store.get(node_id)
        except NodeNotFoundError:
            return
        if node.current_state != PowerState.ON or not node.initialized:
            return
        if node.system_type not in (SystemType.LINUX, SystemType.PROXMOX):
            return

        info = node.system_info.model_copy(deep=True)
        system_type = info.type
        samplers = {
            "cpu_usage": self.commander.get_cpu_usage,
            "load_average": self.commander.get_load_average,
            "memory_usage": self.commander.get_memory_usage,
            "disk_usage": self.commander.get_disk_usage,
            "network_usage": self.commander.get_network_usage,
        }
        for attr, sampler in samplers.items():
            try:
                setattr(info, attr, await sampler(node, system_type))
            except CommandError as e:
                self._log.warning(f"Failed to sample {attr} on {node.name}: {e}")
                if e.is_connectivity:
                    break

        self.store.set_system_info(node.id, info)
