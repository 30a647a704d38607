from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from fleetpower.models import GuestPlacement, HypervisorCredentials, Node
from fleetpower.state import PowerState
from fleetpower.storage import MemoryNodeStore


class FakeClock:
    """Manually advanced clock for duration bookkeeping."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryNodeStore(clock=clock)


@pytest.fixture
def credentials():
    return HypervisorCredentials(user="root", realm="pam", token_id="fleetpower", secret="s3cret")


def make_node(node_id: str = "nas", **overrides) -> Node:
    fields = {
        "id": node_id,
        "name": node_id.upper(),
        "hostname": f"{node_id}.lan",
    }
    fields.update(overrides)
    return Node(**fields)


def make_guest(host_id: str = "pve1", vmid: int = 101, **overrides) -> Node:
    fields = {
        "name": f"vm{vmid}",
        "hostname": f"10.0.0.{vmid % 250}",
        "parent_id": host_id,
        "initialized": True,
        "guest": GuestPlacement(hypervisor_node=host_id, vmid=vmid),
    }
    fields.update(overrides)
    return Node(id=f"{host_id}-vm-{vmid}", **fields)


@pytest.fixture
def hypervisor_host(credentials):
    return make_node(
        "pve1",
        current_state=PowerState.ON,
        hypervisor=credentials,
        hypervisor_node="pve1",
        initialized=True,
    )


class FakeProxmoxClient:
    """Stands in for ProxmoxClient inside ``async with``."""

    def __init__(self, calls: list | None = None):
        self.calls = calls if calls is not None else []
        for verb in ("start", "stop", "shutdown", "pause", "resume"):
            setattr(self, verb, AsyncMock(side_effect=self._recorder(verb)))
        self.get_guest_status = AsyncMock(return_value={"status": "running"})
        self.list_nodes = AsyncMock(return_value=[{"node": "pve1"}])
        self.list_guests = AsyncMock(return_value=[])
        self.get_guest_addresses = AsyncMock(return_value=[])

    def _recorder(self, verb):
        async def record(vmid):
            self.calls.append((verb, vmid))
            return f"UPID:pve1:{verb}:{vmid}"

        return record

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


@pytest.fixture
def proxmox_client():
    return FakeProxmoxClient()


@pytest.fixture
def client_factory(proxmox_client):
    return MagicMock(return_value=proxmox_client)


@pytest.fixture(name="make_node")
def make_node_fixture():
    return make_node


@pytest.fixture(name="make_guest")
def make_guest_fixture():
    return make_guest


@pytest.fixture
def make_proxmox_client():
    return FakeProxmoxClient
