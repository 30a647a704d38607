"""Tests for the physical-host and hypervisor-guest power backends."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from fleetpower.backends import (
    SUSPEND_COMMANDS,
    BackendKind,
    HypervisorGuestBackend,
    PhysicalHostBackend,
)
from fleetpower.errors import ActuationError, CommandError, TopologyError
from fleetpower.state import PowerState


@pytest.fixture
def ssh():
    client = MagicMock()
    client.execute = AsyncMock()
    return client


@pytest.fixture
def wol():
    sender = MagicMock()
    sender.send_many = MagicMock(return_value=2)
    return sender


class TestPhysicalHostBackend:
    @pytest.mark.asyncio
    async def test_wake_sends_magic_packet(self, ssh, wol, make_node):
        backend = PhysicalHostBackend(ssh, wol)
        result = await backend.wake(make_node(mac_address="AA:BB:CC:DD:EE:FF"))

        assert result.success
        wol.send_many.assert_called_once_with(
            "AA:BB:CC:DD:EE:FF", ("255.255.255.255:9", "255.255.255.255:7")
        )
        assert backend.kind == BackendKind.PHYSICAL

    @pytest.mark.asyncio
    async def test_wake_without_mac(self, ssh, wol, make_node):
        with pytest.raises(ActuationError, match="no MAC address"):
            await PhysicalHostBackend(ssh, wol).wake(make_node())
        wol.send_many.assert_not_called()

    @pytest.mark.asyncio
    async def test_wake_with_bad_mac(self, ssh, wol, make_node):
        wol.send_many.side_effect = ValueError("invalid MAC address: 'zz'")
        with pytest.raises(ActuationError, match="invalid MAC"):
            await PhysicalHostBackend(ssh, wol).wake(make_node(mac_address="zz"))

    @pytest.mark.asyncio
    async def test_suspend_first_command_wins(self, ssh, wol, make_node):
        result = await PhysicalHostBackend(ssh, wol).suspend(make_node(ssh_user="admin", ssh_port=2222))
        assert result.success
        ssh.execute.assert_awaited_once_with("nas.lan", 2222, "admin", "", SUSPEND_COMMANDS[0])

    @pytest.mark.asyncio
    async def test_suspend_falls_through(self, ssh, wol, make_node):
        ssh.execute.side_effect = [
            CommandError(CommandError.EXECUTION, "systemctl: not found"),
            None,
        ]
        result = await PhysicalHostBackend(ssh, wol).suspend(make_node())
        assert result.detail == SUSPEND_COMMANDS[1]

    @pytest.mark.asyncio
    async def test_suspend_all_fail(self, ssh, wol, make_node):
        ssh.execute.side_effect = CommandError(CommandError.AUTHENTICATION, "Permission denied")
        with pytest.raises(ActuationError, match="All suspend commands failed"):
            await PhysicalHostBackend(ssh, wol).suspend(make_node())
        assert ssh.execute.await_count == len(SUSPEND_COMMANDS)

    @pytest.mark.asyncio
    async def test_shutdown_reuses_suspend(self, ssh, wol, make_node):
        await PhysicalHostBackend(ssh, wol).shutdown(make_node())
        assert ssh.execute.await_args.args[-1] == SUSPEND_COMMANDS[0]

    @pytest.mark.asyncio
    async def test_stop_unsupported(self, ssh, wol, make_node):
        with pytest.raises(ActuationError):
            await PhysicalHostBackend(ssh, wol).stop(make_node())


# ---------------------------------------------------------------------------
# Hypervisor guests
# ---------------------------------------------------------------------------


class TestHypervisorGuestBackend:
    """Guest intents go through the parent host's API client."""

    @pytest.mark.asyncio
    async def test_wake_starts_stopped_guest(self, store, hypervisor_host, make_guest, client_factory, proxmox_client):
        store.add(hypervisor_host)
        guest = make_guest(current_state=PowerState.OFF)
        backend = HypervisorGuestBackend(store, client_factory)

        result = await backend.wake(guest)

        assert result.success
        assert proxmox_client.calls == [("start", 101)]
        host_arg, node_name = client_factory.call_args.args
        assert host_arg.id == "pve1"
        assert node_name == "pve1"
        assert backend.kind == BackendKind.GUEST

    @pytest.mark.asyncio
    async def test_wake_resumes_suspended_guest(self, store, hypervisor_host, make_guest, client_factory, proxmox_client):
        store.add(hypervisor_host)
        await HypervisorGuestBackend(store, client_factory).wake(make_guest(current_state=PowerState.SUSPENDED))
        assert proxmox_client.calls == [("resume", 101)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("intent,verb", [("suspend", "pause"), ("shutdown", "shutdown"), ("stop", "stop")])
    async def test_intents_map_to_primitives(
        self, store, hypervisor_host, make_guest, client_factory, proxmox_client, intent, verb
    ):
        store.add(hypervisor_host)
        backend = HypervisorGuestBackend(store, client_factory)
        await getattr(backend, intent)(make_guest(current_state=PowerState.ON))
        assert proxmox_client.calls == [(verb, 101)]

    @pytest.mark.asyncio
    async def test_suspend_requires_online_host(self, store, hypervisor_host, make_guest, client_factory):
        store.add(hypervisor_host.model_copy(update={"current_state": PowerState.OFF}))
        with pytest.raises(TopologyError, match="not online"):
            await HypervisorGuestBackend(store, client_factory).suspend(make_guest(current_state=PowerState.ON))
        client_factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_wake_tolerates_offline_host(self, store, hypervisor_host, make_guest, client_factory, proxmox_client):
        store.add(hypervisor_host.model_copy(update={"current_state": PowerState.UNKNOWN}))
        await HypervisorGuestBackend(store, client_factory).wake(make_guest(current_state=PowerState.OFF))
        assert proxmox_client.calls == [("start", 101)]

    @pytest.mark.asyncio
    async def test_host_without_credentials(self, store, hypervisor_host, make_guest, client_factory):
        store.add(hypervisor_host.model_copy(update={"hypervisor": None}))
        with pytest.raises(TopologyError, match="no API credentials"):
            await HypervisorGuestBackend(store, client_factory).wake(make_guest())

    @pytest.mark.asyncio
    async def test_missing_host(self, store, make_guest, client_factory):
        with pytest.raises(TopologyError):
            await HypervisorGuestBackend(store, client_factory).wake(make_guest())
