"""Backend for hypervisor guests: every intent goes through the parent's API."""

from __future__ import annotations

import logging
from typing import Callable

from fleetpower.backends.base import BackendKind, BackendResult, PowerBackend
from fleetpower.errors import NodeNotFoundError, TopologyError
from fleetpower.models import Node
from fleetpower.remote.proxmox import ProxmoxClient
from fleetpower.state import PowerState
from fleetpower.storage import NodeStore

ClientFactory = Callable[..., ProxmoxClient]


class HypervisorGuestBackend(PowerBackend):
    """Actuate a virtual machine through its host's management API.

    The guest's parent must carry API credentials. Suspend, shutdown and
    stop additionally require the parent to be on; wake does not, since the
    actuator wakes the parent first.
    """

    def __init__(
        self,
        store: NodeStore,
        client_factory: ClientFactory,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.client_factory = client_factory
        self._log = logger or logging.getLogger(__name__)

    @property
    def kind(self) -> BackendKind:
        return BackendKind.GUEST

    def _resolve_host(self, node: Node, require_online: bool) -> Node:
        if node.guest is None:
            raise TopologyError(f"node {node.name} is not a hypervisor guest")
        if not node.parent_id:
            raise TopologyError(f"guest {node.name} has no parent hypervisor host")
        try:
            host = self.store.get(node.parent_id)
        except NodeNotFoundError as e:
            raise TopologyError(f"failed to get parent hypervisor host {node.parent_id}: {e}") from e

        if host.hypervisor is None:
            raise TopologyError(f"parent hypervisor host {host.name} has no API credentials")
        if require_online and host.current_state != PowerState.ON:
            raise TopologyError(f"parent hypervisor host {host.name} is not online")
        return host

    async def _call(self, node: Node, verb: str, require_online: bool = True) -> BackendResult:
        host = self._resolve_host(node, require_online)
        async with self.client_factory(host, node.guest.hypervisor_node) as client:
            upid = await getattr(client, verb)(node.guest.vmid)
        self._log.info(f"Guest {node.name} (VMID {node.guest.vmid}) {verb} issued on {host.name}: {upid}")
        return BackendResult(success=True, detail=upid)

    async def wake(self, node: Node) -> BackendResult:
        if node.current_state == PowerState.SUSPENDED:
            return await self._call(node, "resume", require_online=False)
        return await self._call(node, "start", require_online=False)

    async def suspend(self, node: Node) -> BackendResult:
        return await self._call(node, "pause")

    async def shutdown(self, node: Node) -> BackendResult:
        return await self._call(node, "shutdown")

    async def stop(self, node: Node) -> BackendResult:
        return await self._call(node, "stop")
