"""Power backends: one per way a node can be actuated."""

from fleetpower.backends.base import BackendKind, BackendResult, PowerBackend
from fleetpower.backends.guest import HypervisorGuestBackend
from fleetpower.backends.physical import SUSPEND_COMMANDS, PhysicalHostBackend

__all__ = [
    "BackendKind",
    "BackendResult",
    "HypervisorGuestBackend",
    "PhysicalHostBackend",
    "PowerBackend",
    "SUSPEND_COMMANDS",
]
