"""Liveness detection by TCP connect.

Reachability is approximated by opening TCP connections to a few commonly
open ports rather than ICMP, so the controller needs no raw-socket
privileges. An unreachable node cannot be told apart from a suspended one;
the last known state decides.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from fleetpower.errors import FleetPowerError, NodeNotFoundError
from fleetpower.models import KNOWN_PORTS, Node, Service, detect_service_type, utcnow
from fleetpower.remote.proxmox import ProxmoxClient, map_guest_status
from fleetpower.state import PowerState, ServiceSource, ServiceStatus
from fleetpower.storage import NodeStore
from fleetpower.timeouts import LIVENESS_TIMEOUT

# Tried in order by is_reachable()
LIVENESS_PORTS: tuple[int, ...] = (80, 443, 22)

# High-probability ports for a second, faster sweep
QUICK_SCAN_PORTS: tuple[int, ...] = (22, 80, 443, 3389, 5900)


class LivenessDetector:
    """Decide whether nodes are up."""

    def __init__(
        self,
        *,
        liveness_timeout: float = LIVENESS_TIMEOUT,
        quick_scan_timeout: float = 1.0,
        service_scan_timeout: float = 3.0,
        discovery_scan_timeout: float = 2.0,
        store: NodeStore | None = None,
        client_factory: Callable[..., ProxmoxClient] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.liveness_timeout = liveness_timeout
        self.quick_scan_timeout = quick_scan_timeout
        self.service_scan_timeout = service_scan_timeout
        self.discovery_scan_timeout = discovery_scan_timeout
        self.store = store
        self.client_factory = client_factory
        self._log = logger or logging.getLogger(__name__)

    async def scan_port(self, host: str, port: int, timeout: float) -> bool:
        """True if a TCP connection to host:port opens within ``timeout``."""
        if not host:
            return False
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def is_reachable(self, host: str, timeout: float | None = None) -> bool:
        """Try each liveness port in turn; any open port means reachable."""
        timeout = self.liveness_timeout if timeout is None else timeout
        for port in LIVENESS_PORTS:
            if await self.scan_port(host, port, timeout):
                return True
        return False

    async def quick_scan(self, host: str) -> bool:
        for port in QUICK_SCAN_PORTS:
            if await self.scan_port(host, port, self.quick_scan_timeout):
                return True
        return False

    async def scan_services(self, host: str, services: list[Service]) -> list[Service]:
        """Return copies of ``services`` with status and last_check refreshed."""
        if not services:
            return []
        results = await asyncio.gather(
            *(self.scan_port(host, s.port, self.service_scan_timeout) for s in services)
        )
        now = utcnow()
        return [
            s.model_copy(update={"status": ServiceStatus.UP if up else ServiceStatus.DOWN, "last_check": now})
            for s, up in zip(services, results)
        ]

    async def discover_services(self, host: str, node_id: str) -> list[Service]:
        """Sweep every well-known homelab port and describe the open ones."""
        ports = sorted(KNOWN_PORTS)
        results = await asyncio.gather(
            *(self.scan_port(host, port, self.discovery_scan_timeout) for port in ports)
        )
        now = utcnow()
        found = [
            Service(
                id=f"{node_id}-port-{port}",
                node_id=node_id,
                name=f"{KNOWN_PORTS[port]}-{port}",
                port=port,
                type=detect_service_type(port),
                status=ServiceStatus.UP,
                last_check=now,
                source=ServiceSource.DISCOVERED,
            )
            for port, up in zip(ports, results)
            if up
        ]
        self._log.debug(f"Port sweep of {host} found {len(found)} open ports")
        return found

    async def scan_services_with_discovery(
        self, host: str, node_id: str, configured: list[Service]
    ) -> list[Service]:
        """Refresh ``configured`` and append open ports not already among them.

        Services discovered on an earlier pass are part of ``configured`` and
        keep their identity; a port never appears twice.
        """
        scanned, found = await asyncio.gather(
            self.scan_services(host, configured),
            self.discover_services(host, node_id),
        )
        known = {s.port for s in configured}
        added = [s for s in found if s.port not in known]
        if added:
            self._log.info(f"Discovered {len(added)} new services on {host}: {[s.port for s in added]}")
        return scanned + added

    async def determine_state(self, node: Node) -> PowerState:
        """Classify a physical node from TCP reachability.

        Unreachable nodes stay suspended if they were suspended, stay
        init_failed while still awaiting initialization, and are off
        otherwise.
        """
        host = node.hostname
        if await self.is_reachable(host):
            return PowerState.ON
        if await self.quick_scan(host):
            return PowerState.ON
        for service in node.services:
            if await self.scan_port(host, service.port, self.liveness_timeout):
                return PowerState.ON

        if node.current_state == PowerState.SUSPENDED:
            return PowerState.SUSPENDED
        if node.current_state == PowerState.INIT_FAILED and not node.initialized:
            return PowerState.INIT_FAILED
        return PowerState.OFF

    async def determine_guest_state(self, node: Node) -> PowerState:
        """Read a guest's power state from its host's management API.

        Returns UNKNOWN when the host is missing, offline, lacks credentials,
        or the API call fails.
        """
        if node.guest is None or not node.parent_id or self.store is None or self.client_factory is None:
            return PowerState.UNKNOWN
        try:
            host = self.store.get(node.parent_id)
        except NodeNotFoundError:
            return PowerState.UNKNOWN
        if host.hypervisor is None:
            return PowerState.UNKNOWN
        if host.current_state != PowerState.ON:
            # Guests cannot run on a host that is down
            return PowerState.OFF if host.current_state in (PowerState.OFF, PowerState.SUSPENDED) else PowerState.UNKNOWN

        try:
            async with self.client_factory(host, node.guest.hypervisor_node) as client:
                status = await client.get_guest_status(node.guest.vmid)
        except FleetPowerError as e:
            self._log.warning(f"Failed to read guest status for {node.name}: {e}")
            return PowerState.UNKNOWN

        qmp = status.get("qmpstatus") or ""
        if qmp in ("paused", "suspended"):
            return PowerState.SUSPENDED
        return map_guest_status(status.get("status", ""))
