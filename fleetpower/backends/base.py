"""Base power backend interface.

A node is either a physical host (wake-on-LAN plus remote shell) or a
hypervisor guest (management API on its parent host). The two backends form
a closed set; the actuator picks one from the node's guest placement and
then calls the same four intents on it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from fleetpower.models import Node


class BackendKind(str, Enum):
    """Which actuation channel a backend drives."""
    PHYSICAL = "physical"
    GUEST = "guest"


@dataclass
class BackendResult:
    """Result of one backend actuation."""
    success: bool
    detail: str = ""
    error: str | None = None


class PowerBackend(ABC):
    """Abstract base class for power backends.

    Implementations raise FleetPowerError subclasses on failure; the
    actuator turns those into Action records.
    """

    @property
    @abstractmethod
    def kind(self) -> BackendKind:
        """Backend identifier used in logs and metrics."""
        ...

    @abstractmethod
    async def wake(self, node: Node) -> BackendResult:
        ...

    @abstractmethod
    async def suspend(self, node: Node) -> BackendResult:
        ...

    @abstractmethod
    async def shutdown(self, node: Node) -> BackendResult:
        ...

    @abstractmethod
    async def stop(self, node: Node) -> BackendResult:
        ...
