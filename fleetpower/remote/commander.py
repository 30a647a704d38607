"""Remote probing and configuration commands run over SSH.

Every method takes the target Node and issues one or more shell commands
through SSHClient. Failures surface as CommandError; its kind separates
connectivity problems from commands the host does not support.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time

from fleetpower.errors import CommandError
from fleetpower.models import (
    DiskInfo,
    HypervisorCredentials,
    MemoryInfo,
    NetworkInfo,
    NetworkInterface,
    Node,
    WOLInfo,
    utcnow,
)
from fleetpower.remote.ssh import SSHClient
from fleetpower.remote.wol import normalize_mac
from fleetpower.state import SystemType

# Interface name prefixes that never carry a wake-capable physical NIC
VIRTUAL_INTERFACE_PREFIXES = ("docker", "veth", "br-", "virbr")

_UNIX_FAMILIES = (SystemType.LINUX, SystemType.PROXMOX)


class RemoteCommander:
    """Run probing commands against a node's remote shell."""

    def __init__(
        self,
        ssh: SSHClient,
        logger: logging.Logger | None = None,
        sleep=asyncio.sleep,
    ):
        self.ssh = ssh
        self._log = logger or logging.getLogger(__name__)
        self._sleep = sleep

    async def _output(self, node: Node, command: str) -> str:
        return await self.ssh.execute_with_output(
            node.hostname, node.ssh_port, node.ssh_user, node.ssh_key_path, command
        )

    @staticmethod
    def _unsupported(what: str, system_type: SystemType) -> CommandError:
        return CommandError(
            CommandError.UNSUPPORTED,
            f"{what} not supported for system type: {system_type.value}",
        )

    # -----------------------------------------------------------------------
    # Identification
    # -----------------------------------------------------------------------

    async def test_connection(self, node: Node) -> None:
        await self.ssh.test_connection(node.hostname, node.ssh_port, node.ssh_user, node.ssh_key_path)

    async def detect_system_type(self, node: Node) -> SystemType:
        """Identify the OS family: Proxmox, then Linux, then Windows."""
        output = ""
        try:
            output = await self._output(node, "test -f /etc/pve/version && cat /etc/pve/version")
            if "pve-manager" in output:
                return SystemType.PROXMOX
        except CommandError as e:
            self._log.debug(f"{node.name} is not a Proxmox host: {e}")

        try:
            output = await self._output(node, "uname -s")
            if "linux" in output.lower():
                return SystemType.LINUX
        except CommandError as e:
            self._log.debug(f"uname failed on {node.name}: {e}")

        try:
            output = await self._output(node, 'powershell.exe -Command "$PSVersionTable.PSVersion"')
            if "Major" in output:
                return SystemType.WINDOWS
        except CommandError as e:
            self._log.debug(f"PowerShell probe failed on {node.name}: {e}")

        raise CommandError(
            CommandError.DETECTION,
            "Unable to detect system type",
            command="system detection",
            output=output,
        )

    async def get_os_version(self, node: Node, system_type: SystemType) -> str:
        if system_type in _UNIX_FAMILIES:
            output = await self._output(node, "cat /etc/os-release | grep -E '^(NAME|VERSION)='")
            fields: dict[str, str] = {}
            for line in output.splitlines():
                key, sep, value = line.partition("=")
                if sep:
                    fields[key.strip()] = value.strip().strip('"')
            return f"{fields.get('NAME', '')} {fields.get('VERSION', '')}".strip()
        if system_type == SystemType.WINDOWS:
            return await self._output(
                node,
                'powershell.exe -Command "(Get-CimInstance Win32_OperatingSystem).Caption + \' \' + '
                '(Get-CimInstance Win32_OperatingSystem).Version"',
            )
        raise self._unsupported("OS version", system_type)

    async def get_system_id(self, node: Node, system_type: SystemType) -> str:
        if system_type in _UNIX_FAMILIES:
            return await self._output(node, "sudo cat /etc/machine-id")
        if system_type == SystemType.WINDOWS:
            return await self._output(
                node, 'powershell.exe -Command "(Get-CimInstance Win32_ComputerSystemProduct).UUID"'
            )
        raise self._unsupported("System ID", system_type)

    # -----------------------------------------------------------------------
    # Network interfaces
    # -----------------------------------------------------------------------

    async def get_network_interfaces(self, node: Node, system_type: SystemType) -> list[NetworkInterface]:
        if system_type in _UNIX_FAMILIES:
            try:
                output = await self._output(node, "sudo ip -j addr show")
            except CommandError as e:
                if e.is_connectivity:
                    raise
                output = await self._output(node, "sudo ip addr show | grep -E 'inet |inet6 |link/ether'")
                return parse_ip_addr_text(output)
            return parse_ip_addr_json(output)

        if system_type == SystemType.WINDOWS:
            try:
                output = await self._output(
                    node,
                    'powershell.exe -Command "Get-NetAdapter | Where-Object {$_.Status -eq \'Up\'} | '
                    "ForEach-Object { $adapter = $_; Get-NetIPAddress -InterfaceIndex $adapter.ifIndex "
                    "-ErrorAction SilentlyContinue | ForEach-Object { [PSCustomObject]@{Name=$adapter.Name; "
                    'MAC=$adapter.MacAddress; IP=$_.IPAddress; Family=$_.AddressFamily} } } | ConvertTo-Json -Compress"',
                )
            except CommandError as e:
                if e.is_connectivity:
                    raise
                output = await self._output(
                    node,
                    'powershell.exe -Command "Get-CimInstance Win32_NetworkAdapterConfiguration | '
                    "Where-Object {$_.IPEnabled -eq $true} | Select-Object Description, MACAddress, IPAddress "
                    '| ConvertTo-Json -Compress"',
                )
                return parse_windows_wmi_interfaces(output)
            return parse_windows_interfaces(output)

        raise self._unsupported("Network interfaces", system_type)

    # -----------------------------------------------------------------------
    # Wake-on-LAN
    # -----------------------------------------------------------------------

    async def check_wake_on_lan(self, node: Node) -> WOLInfo:
        """Report which physical interfaces support and have armed magic-packet wake."""
        info = WOLInfo(last_checked=utcnow())
        try:
            output = await self._output(
                node, "ip link show | grep -E '^[0-9]+:' | grep -v 'lo:' | cut -d: -f2 | cut -d' ' -f2"
            )
        except CommandError as e:
            if e.is_connectivity:
                raise
            self._log.warning(f"Failed to list network interfaces on {node.name}: {e}")
            return info

        for iface in output.split():
            iface = iface.split("@", 1)[0]
            if iface.startswith(VIRTUAL_INTERFACE_PREFIXES):
                continue
            try:
                supports = await self._output(node, f"sudo ethtool {iface} 2>/dev/null | grep 'Supports Wake-on:'")
            except CommandError:
                continue
            modes = supports.split(":", 1)[-1]
            if "g" not in modes:
                continue

            info.supported = True
            info.interfaces.append(iface)
            self._log.debug(f"Found WoL-capable interface {iface} on {node.name}")

            try:
                current = await self._output(node, f"sudo ethtool {iface} 2>/dev/null | grep 'Wake-on:'")
            except CommandError:
                continue
            # The grep also matches the "Supports Wake-on:" line
            for line in current.splitlines():
                line = line.strip()
                if line.startswith("Wake-on:") and "g" in line.split(":", 1)[1]:
                    info.armed = True
        return info

    async def arm_wake_on_lan(self, node: Node, interfaces: list[str]) -> list[str]:
        """Enable magic-packet wake on each interface.

        Returns:
            Interfaces that were armed.

        Raises:
            CommandError: kind ``arm`` when no interface could be armed.
        """
        armed: list[str] = []
        failed: list[str] = []
        for iface in interfaces:
            try:
                await self._output(node, f"sudo ethtool -s {iface} wol g")
            except CommandError as e:
                if e.is_connectivity:
                    raise
                self._log.warning(f"Failed to arm Wake-on-LAN on {node.name}/{iface}: {e}")
                failed.append(iface)
                continue
            self._log.info(f"Wake-on-LAN armed on {node.name}/{iface}")
            armed.append(iface)

        if not armed:
            raise CommandError(
                CommandError.ARM,
                f"Failed to arm Wake-on-LAN on any interfaces. Failed interfaces: {', '.join(failed)}",
            )
        return armed

    # -----------------------------------------------------------------------
    # Resource sampling
    # -----------------------------------------------------------------------

    async def get_cpu_usage(self, node: Node, system_type: SystemType) -> float:
        if system_type in _UNIX_FAMILIES:
            command = "vmstat 1 2 | tail -1 | awk '{print 100-$15}'"
        elif system_type == SystemType.WINDOWS:
            command = (
                'powershell.exe -Command "Get-CimInstance Win32_Processor | Measure-Object -Property '
                'LoadPercentage -Average | Select-Object -ExpandProperty Average"'
            )
        else:
            raise self._unsupported("CPU usage", system_type)
        output = await self._output(node, command)
        return _parse_float(output, command, "CPU usage")

    async def get_load_average(self, node: Node, system_type: SystemType) -> list[float]:
        if system_type not in _UNIX_FAMILIES:
            raise self._unsupported("Load average", system_type)
        command = "cat /proc/loadavg"
        output = await self._output(node, command)
        parts = output.split()
        if len(parts) < 3:
            raise CommandError(CommandError.PARSE, "Invalid load average format", command, output)
        return [_parse_float(p, command, "load average") for p in parts[:3]]

    async def get_memory_usage(self, node: Node, system_type: SystemType) -> MemoryInfo:
        if system_type in _UNIX_FAMILIES:
            command = "sudo free -b | grep '^Mem:'"
            output = await self._output(node, command)
            parts = output.split()
            if len(parts) < 3:
                raise CommandError(CommandError.PARSE, "Invalid memory info format", command, output)
            total, used = _parse_ints(parts[1:3], command, "memory info")
        elif system_type == SystemType.WINDOWS:
            command = (
                'powershell.exe -Command "Get-CimInstance Win32_OperatingSystem | Select-Object '
                'TotalVisibleMemorySize, FreePhysicalMemory | ConvertTo-Json"'
            )
            output = await self._output(node, command)
            try:
                data = json.loads(output)
                total = int(data["TotalVisibleMemorySize"]) * 1024
                used = total - int(data["FreePhysicalMemory"]) * 1024
            except (ValueError, KeyError, TypeError) as e:
                raise CommandError(CommandError.PARSE, f"Invalid memory info: {e}", command, output) from e
        else:
            raise self._unsupported("Memory usage", system_type)

        return MemoryInfo(
            total=total,
            used=used,
            free=total - used,
            used_percent=(used / total * 100) if total else 0.0,
        )

    async def get_disk_usage(self, node: Node, system_type: SystemType) -> DiskInfo:
        if system_type not in _UNIX_FAMILIES:
            raise self._unsupported("Disk usage", system_type)
        command = "sudo df -B1 / | tail -1"
        output = await self._output(node, command)
        parts = output.split()
        if len(parts) < 4:
            raise CommandError(CommandError.PARSE, "Invalid disk usage format", command, output)
        total, used, free = _parse_ints(parts[1:4], command, "disk usage")
        return DiskInfo(
            total=total,
            used=used,
            free=free,
            used_percent=(used / total * 100) if total else 0.0,
        )

    async def get_network_usage(self, node: Node, system_type: SystemType) -> NetworkInfo:
        """Two /proc/net/dev readings one second apart, converted to MB/s."""
        if system_type not in _UNIX_FAMILIES:
            raise self._unsupported("Network usage", system_type)
        command = "cat /proc/net/dev | grep -v lo: | awk 'NR>2 {rx+=$2; tx+=$10} END {print rx, tx}'"

        async def read() -> tuple[int, int, float]:
            output = await self._output(node, command)
            parts = output.split()
            if len(parts) != 2:
                raise CommandError(CommandError.PARSE, "Invalid network stats format", command, output)
            rx, tx = _parse_ints(parts, command, "network stats")
            return rx, tx, time.monotonic()

        rx1, tx1, t1 = await read()
        await self._sleep(1.0)
        rx2, tx2, t2 = await read()

        elapsed = max(t2 - t1, 1.0)
        return NetworkInfo(
            bytes_recv=rx2,
            bytes_sent=tx2,
            mbps_recv=max(rx2 - rx1, 0) / elapsed / 1024 / 1024,
            mbps_sent=max(tx2 - tx1, 0) / elapsed / 1024 / 1024,
        )

    # -----------------------------------------------------------------------
    # Hypervisor bootstrap
    # -----------------------------------------------------------------------

    async def create_hypervisor_token(self, node: Node, user: str | None = None) -> HypervisorCredentials:
        """Create a privilege-sharing API token for ``user@pam`` via ``pveum``."""
        user = user or node.ssh_user
        token_id = f"fleetpower-{int(time.time())}"
        command = f"sudo pveum user token add {user}@pam {token_id} --privsep 0"
        output = await self._output(node, command)

        secret = ""
        for line in output.splitlines():
            if "value" not in line:
                continue
            cells = [c.strip() for c in line.replace("│", "|").split("|") if c.strip()]
            if len(cells) >= 2 and cells[0] == "value":
                secret = cells[1]
                break

        if not secret:
            raise CommandError(CommandError.PARSE, "Failed to extract API token secret", command, output)
        return HypervisorCredentials(user=user, realm="pam", token_id=token_id, secret=secret)


# ---------------------------------------------------------------------------
# Output parsers
# ---------------------------------------------------------------------------


def _parse_float(text: str, command: str, what: str) -> float:
    try:
        return float(text.strip())
    except ValueError as e:
        raise CommandError(CommandError.PARSE, f"Failed to parse {what}", command, text) from e


def _parse_ints(values: list[str], command: str, what: str) -> list[int]:
    try:
        return [int(v) for v in values]
    except ValueError as e:
        raise CommandError(CommandError.PARSE, f"Failed to parse {what}", command, " ".join(values)) from e


def parse_ip_addr_json(output: str) -> list[NetworkInterface]:
    """Parse ``ip -j addr show``; loopback is skipped."""
    try:
        data = json.loads(output)
    except ValueError as e:
        raise CommandError(CommandError.PARSE, "Failed to parse network interfaces JSON", output=output) from e

    interfaces = []
    for iface in data:
        name = iface.get("ifname", "")
        if name == "lo":
            continue
        mac = iface.get("address", "")
        for addr in iface.get("addr_info", []):
            local = addr.get("local")
            if not local:
                continue
            interfaces.append(
                NetworkInterface(
                    name=name,
                    ip_address=local,
                    mac_address=mac,
                    is_ipv6=addr.get("family") == "inet6",
                )
            )
    return interfaces


def parse_ip_addr_text(output: str) -> list[NetworkInterface]:
    """Parse filtered ``ip addr show`` text; link-local IPv6 is skipped."""
    interfaces = []
    current_mac = ""
    current_iface = ""
    for raw in output.splitlines():
        line = raw.strip()
        parts = line.split()
        if "link/ether" in line and len(parts) >= 2:
            current_mac = parts[1]
        elif line.startswith("inet ") and len(parts) >= 2:
            if "dev" in parts[:-1]:
                current_iface = parts[parts.index("dev") + 1]
            elif parts[-1] != parts[1]:
                current_iface = parts[-1]
            interfaces.append(
                NetworkInterface(
                    name=current_iface,
                    ip_address=parts[1].split("/")[0],
                    mac_address=current_mac,
                )
            )
        elif line.startswith("inet6 ") and len(parts) >= 2:
            ip = parts[1].split("/")[0]
            if ip.startswith("fe80"):
                continue
            interfaces.append(
                NetworkInterface(name=current_iface, ip_address=ip, mac_address=current_mac, is_ipv6=True)
            )
    return interfaces


def _windows_mac(mac: str) -> str:
    try:
        return normalize_mac(mac)
    except ValueError:
        return mac


def _json_list(output: str) -> list:
    text = output.strip()
    if not text.startswith("["):
        text = f"[{text}]"
    try:
        return json.loads(text)
    except ValueError as e:
        raise CommandError(CommandError.PARSE, "Failed to parse Windows network interfaces", output=output) from e


def parse_windows_interfaces(output: str) -> list[NetworkInterface]:
    """Parse Get-NetAdapter/Get-NetIPAddress JSON; AddressFamily 23 is IPv6."""
    interfaces = []
    for item in _json_list(output):
        ip = item.get("IP") or ""
        if ip.startswith("127.") or ip == "::1":
            continue
        interfaces.append(
            NetworkInterface(
                name=item.get("Name", ""),
                ip_address=ip,
                mac_address=_windows_mac(item.get("MAC") or ""),
                is_ipv6=item.get("Family") == 23,
            )
        )
    return interfaces


def parse_windows_wmi_interfaces(output: str) -> list[NetworkInterface]:
    """Parse Win32_NetworkAdapterConfiguration JSON."""
    interfaces = []
    for item in _json_list(output):
        mac = _windows_mac(item.get("MACAddress") or "")
        for ip in item.get("IPAddress") or []:
            if not ip or ip.startswith("127.") or ip == "::1":
                continue
            interfaces.append(
                NetworkInterface(
                    name=item.get("Description", ""),
                    ip_address=ip,
                    mac_address=mac,
                    is_ipv6=":" in ip,
                )
            )
    return interfaces
