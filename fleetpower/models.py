"""Pydantic models for nodes, system snapshots and action history."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from fleetpower.state import (
    ActionType,
    Initiator,
    PowerState,
    ServiceSource,
    ServiceStatus,
    SystemType,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# System information
# ---------------------------------------------------------------------------


class NetworkInterface(BaseModel):
    """One address on one network interface."""

    name: str
    ip_address: str = ""
    mac_address: str = ""
    is_ipv6: bool = False


class WOLInfo(BaseModel):
    """Wake-on-LAN capability of a node's physical interfaces."""

    supported: bool = False
    armed: bool = False
    interfaces: list[str] = Field(default_factory=list)
    last_checked: datetime | None = None


class MemoryInfo(BaseModel):
    total: int = 0
    used: int = 0
    free: int = 0
    used_percent: float = 0.0


class DiskInfo(BaseModel):
    total: int = 0
    used: int = 0
    free: int = 0
    used_percent: float = 0.0


class NetworkInfo(BaseModel):
    """Point sample of interface throughput."""

    bytes_recv: int = 0
    bytes_sent: int = 0
    mbps_recv: float = 0.0
    mbps_sent: float = 0.0


class GuestSummary(BaseModel):
    """A virtual machine hosted by a hypervisor node."""

    vmid: int
    name: str = ""
    status: str = ""
    node: str = ""


class SystemInfo(BaseModel):
    """Snapshot collected by the capability probe and resource sampling."""

    type: SystemType = SystemType.UNKNOWN
    system_id: str = ""
    os_version: str = ""
    hostname: str = ""

    interfaces: list[NetworkInterface] = Field(default_factory=list)

    # Current values only; history belongs to an external metrics store
    cpu_usage: float = 0.0
    load_average: list[float] = Field(default_factory=list)
    memory_usage: MemoryInfo = Field(default_factory=MemoryInfo)
    disk_usage: DiskInfo = Field(default_factory=DiskInfo)
    network_usage: NetworkInfo = Field(default_factory=NetworkInfo)

    # Capability matrix
    suspend_support: bool = False
    hibernate_support: bool = False
    power_switch_support: bool = False
    wake_on_lan_support: bool = False
    power_meter_support: bool = False
    power_estimate_support: bool = False

    wake_on_lan: WOLInfo = Field(default_factory=WOLInfo)

    guests: list[GuestSummary] = Field(default_factory=list)

    last_updated: datetime | None = None

    @classmethod
    def defaults_for(cls, system_type: SystemType) -> "SystemInfo":
        """Build a snapshot with the default capability matrix for a family.

        Linux, Proxmox and Windows hosts are assumed to support suspend,
        hibernate, wake-on-LAN and software power estimation. Physical power
        switching and metering need external hardware and default to False.
        Unknown families get nothing.
        """
        info = cls(type=system_type)
        if system_type in (SystemType.LINUX, SystemType.PROXMOX, SystemType.WINDOWS):
            info.suspend_support = True
            info.hibernate_support = True
            info.wake_on_lan_support = True
            info.power_estimate_support = True
        return info

    def apply_capability_defaults(self) -> None:
        """Reset the capability matrix to the defaults for ``self.type``."""
        defaults = SystemInfo.defaults_for(self.type)
        self.suspend_support = defaults.suspend_support
        self.hibernate_support = defaults.hibernate_support
        self.power_switch_support = defaults.power_switch_support
        self.wake_on_lan_support = defaults.wake_on_lan_support
        self.power_meter_support = defaults.power_meter_support
        self.power_estimate_support = defaults.power_estimate_support


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

# Well-known homelab ports and the service type they usually carry
KNOWN_PORTS: dict[int, str] = {
    21: "ftp",
    22: "ssh",
    23: "telnet",
    53: "dns",
    80: "http",
    139: "smb",
    389: "ldap",
    443: "https",
    445: "smb",
    636: "ldap",
    1433: "db",
    1880: "http",
    2049: "nfs",
    3000: "http",
    3306: "db",
    3389: "rdp",
    5432: "db",
    5900: "vnc",
    5901: "vnc",
    6379: "db",
    8006: "proxmox",
    8080: "http",
    8086: "db",
    8096: "http",
    8123: "http",
    8443: "https",
    9090: "http",
    9443: "https",
    19999: "http",
    27017: "db",
    32400: "http",
}


def detect_service_type(port: int) -> str:
    """Guess a service type from its port number."""
    return KNOWN_PORTS.get(port, "custom")


class Service(BaseModel):
    """A TCP service exposed by a node."""

    id: str
    node_id: str
    name: str
    port: int
    type: str = "custom"
    status: ServiceStatus = ServiceStatus.DOWN
    last_check: datetime | None = None
    source: ServiceSource = ServiceSource.CONFIG


# ---------------------------------------------------------------------------
# Actions and hypervisor access
# ---------------------------------------------------------------------------


class Action(BaseModel):
    """Immutable audit record of one actuation or probe attempt."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    action: ActionType
    success: bool = False
    error: str = ""
    initiator: Initiator = Initiator.MANUAL


_TOKEN_RE = re.compile(r"^(?P<user>[^@!=\s]+)@(?P<realm>[^!=\s]+)!(?P<token_id>[^=\s]+)=(?P<secret>\S+)$")


class HypervisorCredentials(BaseModel):
    """API token for a Proxmox host (``user@realm!token_id=secret``)."""

    user: str
    realm: str = "pam"
    token_id: str
    secret: str

    @property
    def token(self) -> str:
        return f"{self.user}@{self.realm}!{self.token_id}={self.secret}"

    @classmethod
    def parse(cls, token: str) -> "HypervisorCredentials":
        match = _TOKEN_RE.match(token.strip())
        if match is None:
            raise ValueError("API token must look like user@realm!tokenid=secret")
        return cls(**match.groupdict())


class GuestPlacement(BaseModel):
    """Where a hypervisor guest lives: the hypervisor's node name and its VMID."""

    hypervisor_node: str
    vmid: int


# ---------------------------------------------------------------------------
# Node
# ---------------------------------------------------------------------------


class Node(BaseModel):
    """A managed physical host or virtual machine."""

    id: str
    name: str
    hostname: str = ""
    mac_address: str = ""

    current_state: PowerState = PowerState.UNKNOWN
    desired_state: PowerState = PowerState.UNKNOWN

    # Set when the node depends on another node being up (e.g. a VM on its host)
    parent_id: str | None = None

    ssh_user: str = "root"
    ssh_port: int = 22
    ssh_key_path: str = ""

    services: list[Service] = Field(default_factory=list)

    initialized: bool = False
    init_retry_count: int = 0
    last_init_attempt: datetime | None = None
    last_successful_init: datetime | None = None

    system_info: SystemInfo | None = None

    # Cumulative seconds spent per state
    total_on_time: float = 0.0
    total_suspended_time: float = 0.0
    total_off_time: float = 0.0
    last_state_change: datetime | None = None

    actions: list[Action] = Field(default_factory=list)

    # Virtualization: guests carry a placement, hypervisor hosts carry
    # credentials and the node name the hypervisor knows them by.
    guest: GuestPlacement | None = None
    hypervisor_node: str = ""
    hypervisor: HypervisorCredentials | None = None

    @property
    def is_guest(self) -> bool:
        return self.guest is not None

    @property
    def system_type(self) -> SystemType:
        if self.system_info is None:
            return SystemType.UNKNOWN
        return self.system_info.type
