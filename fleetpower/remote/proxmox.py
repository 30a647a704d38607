"""Proxmox VE management API client.

Guest lifecycle calls return a task UPID that can be polled with
wait_for_task(). Authentication uses an API token sent as
``Authorization: PVEAPIToken=user@realm!tokenid=secret``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from fleetpower.errors import AuthenticationError, ConnectivityError, HypervisorAPIError
from fleetpower.models import HypervisorCredentials, Node
from fleetpower.state import PowerState
from fleetpower.timeouts import HYPERVISOR_HTTP_TIMEOUT, TASK_POLL_INTERVAL, TASK_WAIT_TIMEOUT, with_timeout

DEFAULT_API_PORT = 8006

# Hypervisor guest status -> controller power state
_GUEST_STATUS_MAP: dict[str, PowerState] = {
    "running": PowerState.ON,
    "stopped": PowerState.OFF,
    "suspended": PowerState.SUSPENDED,
    "paused": PowerState.SUSPENDED,
}


def map_guest_status(status: str) -> PowerState:
    """Translate a guest status string; anything unrecognised is UNKNOWN."""
    return _GUEST_STATUS_MAP.get((status or "").lower(), PowerState.UNKNOWN)


class ProxmoxClient:
    """Async client bound to one Proxmox node.

    Use as an async context manager so the underlying connection pool is
    closed after each operation.
    """

    def __init__(
        self,
        host: str,
        node: str,
        credentials: HypervisorCredentials,
        *,
        port: int = DEFAULT_API_PORT,
        timeout: float = HYPERVISOR_HTTP_TIMEOUT,
        verify_tls: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: logging.Logger | None = None,
    ):
        self.host = host
        self.node = node
        self.base_url = f"https://{host}:{port}/api2/json"
        self._log = logger or logging.getLogger(__name__)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"PVEAPIToken={credentials.token}"},
            timeout=httpx.Timeout(timeout),
            verify=verify_tls,
            transport=transport,
        )

    async def __aenter__(self) -> "ProxmoxClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, data: dict | None = None) -> Any:
        try:
            response = await self._client.request(method, path, data=data)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise ConnectivityError(f"hypervisor API at {self.host} unreachable: {e}") from e
        except httpx.HTTPError as e:
            raise ConnectivityError(f"hypervisor API request to {self.host} failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"hypervisor API rejected credentials ({response.status_code}): {response.text[:200]}"
            )
        if response.status_code >= 400:
            detail = response.text[:500]
            try:
                errors = response.json().get("errors")
                if errors:
                    detail = str(errors)
            except ValueError:
                pass
            raise HypervisorAPIError(
                f"API request failed with status {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        try:
            return response.json().get("data")
        except ValueError as e:
            raise HypervisorAPIError(f"failed to parse response: {e}") from e

    # -----------------------------------------------------------------------
    # Inventory
    # -----------------------------------------------------------------------

    async def list_nodes(self) -> list[dict]:
        return await self._request("GET", "/nodes") or []

    async def list_guests(self) -> list[dict]:
        return await self._request("GET", f"/nodes/{self.node}/qemu") or []

    async def get_guest_status(self, vmid: int) -> dict:
        return await self._request("GET", f"/nodes/{self.node}/qemu/{vmid}/status/current") or {}

    async def get_guest_addresses(self, vmid: int) -> list[str]:
        """IPv4 addresses reported by the guest agent, loopback excluded."""
        path = f"/nodes/{self.node}/qemu/{vmid}/agent"
        await self._request("POST", path, data={"command": "ping"})
        data = await self._request("POST", path, data={"command": "network-get-interfaces"}) or {}

        addresses = []
        for iface in data.get("result", []):
            if iface.get("name") == "lo":
                continue
            for addr in iface.get("ip-addresses", []):
                if addr.get("ip-address-type") == "ipv4":
                    addresses.append(addr.get("ip-address", ""))
        return [a for a in addresses if a and not a.startswith("127.")]

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def _lifecycle(self, vmid: int, verb: str) -> str:
        upid = await self._request("POST", f"/nodes/{self.node}/qemu/{vmid}/status/{verb}")
        self._log.debug(f"Guest {vmid} {verb} on {self.node}: task {upid}")
        return upid or ""

    async def start(self, vmid: int) -> str:
        return await self._lifecycle(vmid, "start")

    async def stop(self, vmid: int) -> str:
        return await self._lifecycle(vmid, "stop")

    async def shutdown(self, vmid: int) -> str:
        return await self._lifecycle(vmid, "shutdown")

    async def pause(self, vmid: int) -> str:
        return await self._lifecycle(vmid, "suspend")

    async def resume(self, vmid: int) -> str:
        return await self._lifecycle(vmid, "resume")

    # -----------------------------------------------------------------------
    # Tasks
    # -----------------------------------------------------------------------

    async def get_task_status(self, upid: str) -> dict:
        return await self._request("GET", f"/nodes/{self.node}/tasks/{upid}/status") or {}

    async def wait_for_task(
        self,
        upid: str,
        timeout: float = TASK_WAIT_TIMEOUT,
        poll_interval: float = TASK_POLL_INTERVAL,
    ) -> dict:
        """Poll a task until it stops.

        Raises:
            HypervisorAPIError: the task finished with a non-OK exit status
            ConnectivityError: the task did not finish within ``timeout``
        """
        return await with_timeout(self._poll_task(upid, poll_interval), timeout, f"hypervisor task {upid}")

    async def _poll_task(self, upid: str, poll_interval: float) -> dict:
        while True:
            status = await self.get_task_status(upid)
            if status.get("status") == "stopped":
                exit_status = status.get("exitstatus", "")
                if exit_status and exit_status != "OK":
                    raise HypervisorAPIError(f"task {upid} failed: {exit_status}")
                return status
            await asyncio.sleep(poll_interval)


class ProxmoxClientFactory:
    """Builds clients for hypervisor host nodes from controller settings."""

    def __init__(
        self,
        *,
        port: int = DEFAULT_API_PORT,
        timeout: float = HYPERVISOR_HTTP_TIMEOUT,
        verify_tls: bool = False,
        logger: logging.Logger | None = None,
    ):
        self.port = port
        self.timeout = timeout
        self.verify_tls = verify_tls
        self._log = logger

    def __call__(self, host: Node, node_name: str | None = None) -> ProxmoxClient:
        if host.hypervisor is None:
            raise AuthenticationError(f"hypervisor host {host.name} has no API credentials")
        return ProxmoxClient(
            host.hostname,
            node_name or host.hypervisor_node or host.hostname.split(".")[0],
            host.hypervisor,
            port=self.port,
            timeout=self.timeout,
            verify_tls=self.verify_tls,
            logger=self._log,
        )
