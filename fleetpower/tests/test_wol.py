"""Tests for the Wake-on-LAN sender."""

from unittest.mock import MagicMock, patch

import pytest

from fleetpower.errors import ActuationError
from fleetpower.remote.wol import (
    DEFAULT_WAKE_ADDRESSES,
    WakeOnLanSender,
    build_magic_packet,
    normalize_mac,
)


class TestMagicPacket:
    def test_layout(self):
        packet = build_magic_packet("AA:BB:CC:DD:EE:FF")
        assert len(packet) == 102
        assert packet[:6] == b"\xff" * 6
        assert packet[6:] == bytes.fromhex("AABBCCDDEEFF") * 16

    @pytest.mark.parametrize("mac", ["aa-bb-cc-dd-ee-ff", "aabb.ccdd.eeff", "aabbccddeeff"])
    def test_accepts_common_notations(self, mac):
        assert normalize_mac(mac) == "AA:BB:CC:DD:EE:FF"

    @pytest.mark.parametrize("mac", ["", "AA:BB:CC", "GG:BB:CC:DD:EE:FF"])
    def test_rejects_garbage(self, mac):
        with pytest.raises(ValueError):
            build_magic_packet(mac)


class TestWakeOnLanSender:
    """Packets go to every broadcast address; one success is enough."""

    @patch("fleetpower.remote.wol.socket.socket")
    def test_send_broadcasts(self, mock_socket):
        sock = mock_socket.return_value
        WakeOnLanSender().send("AA:BB:CC:DD:EE:FF", "255.255.255.255:9")

        sock.setsockopt.assert_called_once()
        sock.setblocking.assert_called_once_with(False)
        packet, target = sock.sendto.call_args[0]
        assert len(packet) == 102
        assert target == ("255.255.255.255", 9)
        sock.close.assert_called_once()

    def test_send_many_defaults_to_ports_9_and_7(self):
        sender = WakeOnLanSender()
        sender.send = MagicMock()
        assert sender.send_many("AA:BB:CC:DD:EE:FF") == 2
        targets = [c.args[1] for c in sender.send.call_args_list]
        assert targets == list(DEFAULT_WAKE_ADDRESSES)

    def test_send_many_tolerates_partial_failure(self):
        sender = WakeOnLanSender()
        sender.send = MagicMock(side_effect=[OSError("network unreachable"), None])
        assert sender.send_many("AA:BB:CC:DD:EE:FF") == 1

    def test_send_many_fails_when_nothing_sent(self):
        sender = WakeOnLanSender()
        sender.send = MagicMock(side_effect=OSError("network unreachable"))
        with pytest.raises(ActuationError, match="any address"):
            sender.send_many("AA:BB:CC:DD:EE:FF")

    def test_send_many_validates_mac_first(self):
        sender = WakeOnLanSender()
        sender.send = MagicMock()
        with pytest.raises(ValueError):
            sender.send_many("not-a-mac")
        sender.send.assert_not_called()
