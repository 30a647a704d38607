"""Backend for physical hosts: magic packet wake, SSH suspend."""

from __future__ import annotations

import logging

from fleetpower.backends.base import BackendKind, BackendResult, PowerBackend
from fleetpower.errors import ActuationError, CommandError
from fleetpower.models import Node
from fleetpower.remote.ssh import SSHClient
from fleetpower.remote.wol import DEFAULT_WAKE_ADDRESSES, WakeOnLanSender

# Tried in order; the first that succeeds wins
SUSPEND_COMMANDS: tuple[str, ...] = (
    "systemctl suspend",
    "pm-suspend",
    "echo mem > /proc/sys/power/state",
)


class PhysicalHostBackend(PowerBackend):
    """Actuate a bare-metal host directly."""

    def __init__(
        self,
        ssh: SSHClient,
        wol: WakeOnLanSender,
        wake_addresses: tuple[str, ...] = DEFAULT_WAKE_ADDRESSES,
        logger: logging.Logger | None = None,
    ):
        self.ssh = ssh
        self.wol = wol
        self.wake_addresses = wake_addresses
        self._log = logger or logging.getLogger(__name__)

    @property
    def kind(self) -> BackendKind:
        return BackendKind.PHYSICAL

    async def wake(self, node: Node) -> BackendResult:
        if not node.mac_address:
            raise ActuationError(f"node {node.name} has no MAC address for Wake-on-LAN")
        try:
            sent = self.wol.send_many(node.mac_address, self.wake_addresses)
        except ValueError as e:
            raise ActuationError(str(e)) from e
        return BackendResult(success=True, detail=f"magic packet sent to {sent} address(es)")

    async def suspend(self, node: Node) -> BackendResult:
        last_error: CommandError | None = None
        for command in SUSPEND_COMMANDS:
            try:
                await self.ssh.execute(node.hostname, node.ssh_port, node.ssh_user, node.ssh_key_path, command)
                return BackendResult(success=True, detail=command)
            except CommandError as e:
                self._log.warning(f"Suspend command '{command}' failed for {node.name}: {e}")
                last_error = e
        raise ActuationError(f"All suspend commands failed. Last error: {last_error}")

    async def shutdown(self, node: Node) -> BackendResult:
        # No true power-off for physical hosts yet; reuse the suspend path.
        return await self.suspend(node)

    async def stop(self, node: Node) -> BackendResult:
        raise ActuationError("force stop is only supported for hypervisor guests")
