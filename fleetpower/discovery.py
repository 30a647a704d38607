"""Hypervisor guest discovery.

Guests found on a Proxmox host become nodes of their own with the host as
parent, so the actuator can wake the host before starting them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from fleetpower.errors import CommandError, FleetPowerError, NodeNotFoundError
from fleetpower.models import GuestPlacement, GuestSummary, Node, SystemInfo, utcnow
from fleetpower.remote.commander import RemoteCommander
from fleetpower.remote.proxmox import ProxmoxClient, map_guest_status
from fleetpower.state import PowerState
from fleetpower.storage import NodeStore


def guest_node_id(host_id: str, vmid: int) -> str:
    return f"{host_id}-vm-{vmid}"


class GuestDiscovery:
    """Mirror the guests of a hypervisor host into the node store."""

    def __init__(
        self,
        store: NodeStore,
        commander: RemoteCommander,
        client_factory: Callable[..., ProxmoxClient],
        *,
        token_user: str | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.commander = commander
        self.client_factory = client_factory
        self.token_user = token_user
        self._log = logger or logging.getLogger(__name__)

    async def ensure_credentials(self, host: Node) -> Node:
        """Give ``host`` an API token and hypervisor node name if it lacks them.

        The token is created over SSH with ``pveum``; the node name is read
        from the API and falls back to the first label of the hostname.

        Raises:
            CommandError: the token could not be created.
        """
        fields = {}
        if host.hypervisor is None:
            self._log.info(f"Creating hypervisor API token on {host.name}")
            host.hypervisor = await self.commander.create_hypervisor_token(host, self.token_user)
            fields["hypervisor"] = host.hypervisor

        if not host.hypervisor_node:
            fields["hypervisor_node"] = await self._discover_node_name(host)

        if fields:
            host = self.store.update_fields(host.id, **fields)
            self._log.info(f"Hypervisor access configured for {host.name} (node {host.hypervisor_node})")
        return host

    async def _discover_node_name(self, host: Node) -> str:
        fallback = host.hostname.split(".")[0]
        try:
            async with self.client_factory(host, fallback) as client:
                nodes = await client.list_nodes()
        except FleetPowerError as e:
            self._log.warning(f"Failed to discover hypervisor node name for {host.name}, using {fallback}: {e}")
            return fallback
        if not nodes or not nodes[0].get("node"):
            return fallback
        return nodes[0]["node"]

    async def discover(self, host_id: str, cancel: asyncio.Event | None = None) -> list[str]:
        """Create or refresh guest nodes for one hypervisor host.

        Returns the IDs of the guest nodes seen. The cancel signal is only
        honoured before network I/O starts.

        Raises:
            NodeNotFoundError: ``host_id`` is not in the store.
            FleetPowerError: credentials or the guest listing failed.
        """
        if cancel is not None and cancel.is_set():
            self._log.debug(f"Guest discovery for {host_id} cancelled before start")
            return []

        host = self.store.get(host_id)
        try:
            host = await self.ensure_credentials(host)
        except CommandError as e:
            self._log.error(f"Failed to set up hypervisor API token on {host.name}: {e}")
            raise

        async with self.client_factory(host, host.hypervisor_node) as client:
            guests = await client.list_guests()
            self._log.info(f"Discovered {len(guests)} guests on {host.name}")

            seen: list[str] = []
            summaries: list[GuestSummary] = []
            for guest in guests:
                vmid = int(guest.get("vmid", 0))
                summaries.append(
                    GuestSummary(
                        vmid=vmid,
                        name=guest.get("name", ""),
                        status=guest.get("status", ""),
                        node=host.hypervisor_node,
                    )
                )
                if guest.get("template"):
                    continue
                addresses = await self._guest_addresses(client, vmid)
                seen.append(self._upsert_guest(host, guest, vmid, addresses))

        info = self.store.get_system_info(host.id) or SystemInfo()
        info.guests = summaries
        self.store.set_system_info(host.id, info)
        return seen

    async def _guest_addresses(self, client: ProxmoxClient, vmid: int) -> list[str]:
        try:
            return await client.get_guest_addresses(vmid)
        except FleetPowerError as e:
            self._log.debug(f"No guest agent addresses for VMID {vmid}: {e}")
            return []

    def _upsert_guest(self, host: Node, guest: dict, vmid: int, addresses: list[str]) -> str:
        node_id = guest_node_id(host.id, vmid)
        name = guest.get("name") or f"vm-{vmid}"
        state = map_guest_status(guest.get("status", ""))

        try:
            existing = self.store.get(node_id)
        except NodeNotFoundError:
            existing = None

        if existing is None:
            now = utcnow()
            self.store.add(
                Node(
                    id=node_id,
                    name=name,
                    hostname=addresses[0] if addresses else name,
                    current_state=state,
                    desired_state=PowerState.UNKNOWN,
                    parent_id=host.id,
                    initialized=True,
                    last_successful_init=now,
                    guest=GuestPlacement(hypervisor_node=host.hypervisor_node, vmid=vmid),
                )
            )
            self._log.info(f"Created guest node {node_id} ({name}) on {host.name}")
            return node_id

        fields = {"name": name, "guest": GuestPlacement(hypervisor_node=host.hypervisor_node, vmid=vmid)}
        if addresses and existing.hostname != addresses[0]:
            self._log.info(f"Guest {name} address changed to {addresses[0]}")
            fields["hostname"] = addresses[0]
        self.store.update_fields(node_id, **fields)
        if existing.current_state != state:
            self._log.info(f"Guest {name} state changed: {existing.current_state.value} -> {state.value}")
            self.store.update_state(node_id, state)
        return node_id
