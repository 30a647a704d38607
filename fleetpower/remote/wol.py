"""Wake-on-LAN magic packet sender.

Transmission is a single non-blocking UDP broadcast write. There is no
acknowledgment at the protocol level: a successful send only means the
packet left this host.
"""

from __future__ import annotations

import logging
import re
import socket

from fleetpower.errors import ActuationError

# Conventional wake ports: 9 (discard) and 7 (echo)
DEFAULT_WAKE_ADDRESSES: tuple[str, ...] = ("255.255.255.255:9", "255.255.255.255:7")

_MAC_CLEAN_RE = re.compile(r"[:\-.]")
_HEX12_RE = re.compile(r"^[0-9a-fA-F]{12}$")


def normalize_mac(mac: str) -> str:
    """Return ``AA:BB:CC:DD:EE:FF`` form; raise ValueError for garbage."""
    bare = _MAC_CLEAN_RE.sub("", mac.strip())
    if not _HEX12_RE.match(bare):
        raise ValueError(f"invalid MAC address: {mac!r}")
    return ":".join(bare[i:i + 2] for i in range(0, 12, 2)).upper()


def build_magic_packet(mac: str) -> bytes:
    """6 bytes of 0xFF followed by 16 repetitions of the 6-byte MAC."""
    mac_bytes = bytes.fromhex(normalize_mac(mac).replace(":", ""))
    return b"\xff" * 6 + mac_bytes * 16


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"broadcast address must be host:port, got {address!r}")
    return host, int(port)


class WakeOnLanSender:
    """Sends magic packets to one or more broadcast addresses."""

    def __init__(self, logger: logging.Logger | None = None):
        self._log = logger or logging.getLogger(__name__)

    def send(self, mac: str, address: str) -> None:
        """Broadcast one magic packet to ``address`` (``host:port``)."""
        packet = build_magic_packet(mac)
        host, port = _split_address(address)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            sock.sendto(packet, (host, port))
        finally:
            sock.close()
        self._log.debug(f"Sent magic packet for {mac} to {address}")

    def send_many(self, mac: str, addresses: tuple[str, ...] | list[str] = DEFAULT_WAKE_ADDRESSES) -> int:
        """Send to every address; succeed if at least one send worked.

        Returns:
            Number of addresses the packet was handed to.

        Raises:
            ValueError: malformed MAC address
            ActuationError: no address accepted the packet
        """
        build_magic_packet(mac)  # validate before touching the network
        sent = 0
        for address in addresses:
            try:
                self.send(mac, address)
                sent += 1
            except OSError as e:
                self._log.warning(f"Failed to send WoL packet to {address}: {e}")
        if sent == 0:
            raise ActuationError("failed to send WoL packet to any address")
        return sent
