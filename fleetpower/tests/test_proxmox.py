"""Tests for the Proxmox management API client."""

from __future__ import annotations

import httpx
import pytest

from fleetpower.errors import AuthenticationError, ConnectivityError, HypervisorAPIError
from fleetpower.models import HypervisorCredentials
from fleetpower.remote.proxmox import ProxmoxClient, ProxmoxClientFactory, map_guest_status
from fleetpower.state import PowerState


def client_with(handler, credentials: HypervisorCredentials) -> ProxmoxClient:
    return ProxmoxClient("pve1.lan", "pve1", credentials, transport=httpx.MockTransport(handler))


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,expected",
        [
            ("running", PowerState.ON),
            ("stopped", PowerState.OFF),
            ("paused", PowerState.SUSPENDED),
            ("suspended", PowerState.SUSPENDED),
            ("prelaunch", PowerState.UNKNOWN),
            ("", PowerState.UNKNOWN),
        ],
    )
    def test_map(self, status, expected):
        assert map_guest_status(status) == expected


class TestRequests:
    """Requests carry the API token and unwrap the ``data`` envelope."""

    @pytest.mark.asyncio
    async def test_auth_header_and_base_url(self, credentials):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"data": [{"vmid": 100, "name": "web", "status": "running"}]})

        async with client_with(handler, credentials) as client:
            guests = await client.list_guests()

        assert guests[0]["vmid"] == 100
        assert seen["url"] == "https://pve1.lan:8006/api2/json/nodes/pve1/qemu"
        assert seen["auth"] == "PVEAPIToken=root@pam!fleetpower=s3cret"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "verb,endpoint",
        [
            ("start", "start"),
            ("stop", "stop"),
            ("shutdown", "shutdown"),
            ("pause", "suspend"),
            ("resume", "resume"),
        ],
    )
    async def test_lifecycle_endpoints(self, credentials, verb, endpoint):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            return httpx.Response(200, json={"data": "UPID:pve1:0001"})

        async with client_with(handler, credentials) as client:
            upid = await getattr(client, verb)(101)

        assert upid == "UPID:pve1:0001"
        assert seen["method"] == "POST"
        assert seen["path"] == f"/api2/json/nodes/pve1/qemu/101/status/{endpoint}"

    @pytest.mark.asyncio
    async def test_unauthorized(self, credentials):
        def handler(request):
            return httpx.Response(401, text="authentication failure")

        async with client_with(handler, credentials) as client:
            with pytest.raises(AuthenticationError):
                await client.list_nodes()

    @pytest.mark.asyncio
    async def test_server_error_carries_status(self, credentials):
        def handler(request):
            return httpx.Response(500, json={"errors": {"vmid": "does not exist"}})

        async with client_with(handler, credentials) as client:
            with pytest.raises(HypervisorAPIError) as exc:
                await client.get_guest_status(999)
        assert exc.value.status_code == 500
        assert "does not exist" in str(exc.value)

    @pytest.mark.asyncio
    async def test_connect_error(self, credentials):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with client_with(handler, credentials) as client:
            with pytest.raises(ConnectivityError):
                await client.list_nodes()


class TestGuestAgent:
    @pytest.mark.asyncio
    async def test_addresses_ipv4_without_loopback(self, credentials):
        commands = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = request.content.decode()
            commands.append(body)
            if "ping" in body:
                return httpx.Response(200, json={"data": {}})
            return httpx.Response(
                200,
                json={
                    "data": {
                        "result": [
                            {"name": "lo", "ip-addresses": [{"ip-address-type": "ipv4", "ip-address": "127.0.0.1"}]},
                            {
                                "name": "eth0",
                                "ip-addresses": [
                                    {"ip-address-type": "ipv4", "ip-address": "192.168.1.50"},
                                    {"ip-address-type": "ipv6", "ip-address": "fe80::1"},
                                ],
                            },
                        ]
                    }
                },
            )

        async with client_with(handler, credentials) as client:
            addresses = await client.get_guest_addresses(101)

        assert addresses == ["192.168.1.50"]
        assert "command=ping" in commands[0]
        assert "network-get-interfaces" in commands[1]


class TestTasks:
    @pytest.mark.asyncio
    async def test_wait_until_stopped(self, credentials):
        responses = iter(
            [
                {"status": "running"},
                {"status": "stopped", "exitstatus": "OK"},
            ]
        )

        def handler(request):
            return httpx.Response(200, json={"data": next(responses)})

        async with client_with(handler, credentials) as client:
            status = await client.wait_for_task("UPID:1", timeout=5, poll_interval=0)
        assert status["exitstatus"] == "OK"

    @pytest.mark.asyncio
    async def test_failed_task(self, credentials):
        def handler(request):
            return httpx.Response(200, json={"data": {"status": "stopped", "exitstatus": "VM is locked"}})

        async with client_with(handler, credentials) as client:
            with pytest.raises(HypervisorAPIError, match="VM is locked"):
                await client.wait_for_task("UPID:1", timeout=5, poll_interval=0)

    @pytest.mark.asyncio
    async def test_timeout(self, credentials):
        def handler(request):
            return httpx.Response(200, json={"data": {"status": "running"}})

        async with client_with(handler, credentials) as client:
            with pytest.raises(ConnectivityError):
                await client.wait_for_task("UPID:1", timeout=0, poll_interval=0)


class TestClientFactory:
    def test_requires_credentials(self, make_node):
        with pytest.raises(AuthenticationError):
            ProxmoxClientFactory()(make_node("pve1"))

    @pytest.mark.asyncio
    async def test_node_name_fallbacks(self, make_node, credentials):
        factory = ProxmoxClientFactory(port=8443)
        host = make_node("pve1", hostname="pve1.home.lan", hypervisor=credentials)

        client = factory(host)
        assert client.node == "pve1"
        assert client.base_url == "https://pve1.home.lan:8443/api2/json"
        await client.aclose()

        named = factory(host.model_copy(update={"hypervisor_node": "alpha"}))
        assert named.node == "alpha"
        await named.aclose()

        explicit = factory(host, "beta")
        assert explicit.node == "beta"
        await explicit.aclose()
