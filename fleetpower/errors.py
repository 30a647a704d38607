"""Error taxonomy for the power controller.

Connectivity, authentication, actuation, topology and data errors all derive
from FleetPowerError so callers at a propagation boundary (the actuator, the
reconciliation loop) can catch them in one place.
"""

from __future__ import annotations

import asyncio


class FleetPowerError(Exception):
    """Base class for controller errors."""


class ConnectivityError(FleetPowerError):
    """Host unreachable, dial failure or timeout."""


class AuthenticationError(FleetPowerError):
    """Missing or rejected SSH key or API token."""


class ActuationError(FleetPowerError):
    """A remote command or API call did not do what was asked."""


class HypervisorAPIError(ActuationError):
    """Hypervisor management API returned an error status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TopologyError(FleetPowerError):
    """Parent missing, cyclic parent chain, or guest without a usable host."""


class NodeNotFoundError(FleetPowerError):
    """Node ID not present in the store."""

    def __init__(self, node_id: str):
        super().__init__(f"node with ID '{node_id}' not found")
        self.node_id = node_id


class InventoryError(FleetPowerError):
    """Inventory file missing or invalid."""


class CommandError(FleetPowerError):
    """Failure of a remote shell command, classified by kind."""

    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    SUDO_PASSWORD_REQUIRED = "sudo_password_required"
    DNS = "dns"
    TIMEOUT = "timeout"
    EXECUTION = "execution"
    DETECTION = "detection"
    ARM = "arm"
    PARSE = "parse"
    UNSUPPORTED = "unsupported"

    def __init__(
        self,
        kind: str,
        message: str,
        command: str = "",
        output: str = "",
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.command = command
        self.output = output

    def __str__(self) -> str:
        if self.command:
            return f"{self.kind} error: {self.message} (command: {self.command})"
        return f"{self.kind} error: {self.message}"

    @property
    def is_connectivity(self) -> bool:
        return self.kind in (self.CONNECTION, self.DNS, self.TIMEOUT)


def classify_ssh_error(exc: BaseException, command: str = "", output: str = "") -> CommandError:
    """Map a raw SSH failure to a CommandError by inspecting its text."""
    if isinstance(exc, CommandError):
        return exc

    text = str(exc)
    lowered = text.lower()

    if "sudo: a password is required" in lowered or "sudo: a password is required" in output.lower():
        return CommandError(
            CommandError.SUDO_PASSWORD_REQUIRED,
            "sudo requires a password; configure passwordless sudo for the SSH user",
            command,
            output,
        )
    if "permission denied" in lowered or "publickey" in lowered or "authentication failed" in lowered:
        return CommandError(CommandError.AUTHENTICATION, f"SSH authentication failed: {text}", command, output)
    if "connection refused" in lowered or isinstance(exc, ConnectionRefusedError):
        return CommandError(CommandError.CONNECTION, f"SSH connection refused: {text}", command, output)
    if (
        "no such host" in lowered
        or "name or service not known" in lowered
        or "name resolution" in lowered
        or "nodename nor servname" in lowered
    ):
        return CommandError(CommandError.DNS, f"cannot resolve host: {text}", command, output)
    if "timeout" in lowered or "timed out" in lowered or isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return CommandError(CommandError.TIMEOUT, f"SSH operation timed out: {text or type(exc).__name__}", command, output)
    return CommandError(CommandError.EXECUTION, f"command failed: {text}", command, output)
