"""Tests for SSH error classification and the SSH client."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import asyncssh
import pytest

from fleetpower.errors import CommandError, classify_ssh_error
from fleetpower.remote.ssh import SSHClient


class TestClassifySSHError:
    @pytest.mark.parametrize(
        "exc,kind",
        [
            (Exception("Permission denied (publickey)"), CommandError.AUTHENTICATION),
            (Exception("sudo: a password is required"), CommandError.SUDO_PASSWORD_REQUIRED),
            (ConnectionRefusedError(111, "Connect call failed"), CommandError.CONNECTION),
            (OSError("[Errno -2] Name or service not known"), CommandError.DNS),
            (asyncio.TimeoutError(), CommandError.TIMEOUT),
            (Exception("operation timed out"), CommandError.TIMEOUT),
            (RuntimeError("exit status 1"), CommandError.EXECUTION),
        ],
    )
    def test_kinds(self, exc, kind):
        assert classify_ssh_error(exc).kind == kind

    def test_command_error_passes_through(self):
        original = CommandError(CommandError.PARSE, "bad output")
        assert classify_ssh_error(original) is original

    def test_sudo_prompt_in_output(self):
        err = classify_ssh_error(RuntimeError("exit status 1"), "sudo ethtool eth0", "sudo: a password is required\n")
        assert err.kind == CommandError.SUDO_PASSWORD_REQUIRED

    def test_str_includes_command(self):
        err = CommandError(CommandError.EXECUTION, "boom", command="uptime")
        assert str(err) == "execution error: boom (command: uptime)"

    def test_connectivity_kinds(self):
        assert CommandError(CommandError.TIMEOUT, "x").is_connectivity
        assert CommandError(CommandError.DNS, "x").is_connectivity
        assert not CommandError(CommandError.AUTHENTICATION, "x").is_connectivity


# ---------------------------------------------------------------------------
# SSHClient
# ---------------------------------------------------------------------------


class _FakeConnection:
    def __init__(self, result):
        self.result = result
        self.commands: list[str] = []

    async def run(self, command, check=False):
        self.commands.append(command)
        return self.result

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class TestSSHClient:
    """Each call dials its own connection with host key checks disabled."""

    @pytest.mark.asyncio
    async def test_execute_with_output_strips(self):
        conn = _FakeConnection(SimpleNamespace(stdout="linux\n", stderr="", exit_status=0))
        with patch("fleetpower.remote.ssh.asyncssh.connect", MagicMock(return_value=conn)) as connect:
            output = await SSHClient(connect_timeout=3).execute_with_output("nas.lan", 2222, "admin", "/k", "uname")

        assert output == "linux"
        assert conn.commands == ["uname"]
        kwargs = connect.call_args.kwargs
        assert connect.call_args.args == ("nas.lan",)
        assert kwargs["port"] == 2222
        assert kwargs["username"] == "admin"
        assert kwargs["known_hosts"] is None
        assert kwargs["connect_timeout"] == 3
        assert kwargs["client_keys"] == ["/k"]

    @pytest.mark.asyncio
    async def test_no_key_path_uses_agent(self):
        conn = _FakeConnection(SimpleNamespace(stdout="", stderr="", exit_status=0))
        with patch("fleetpower.remote.ssh.asyncssh.connect", MagicMock(return_value=conn)) as connect:
            await SSHClient().test_connection("nas.lan", 22, "root")
        assert "client_keys" not in connect.call_args.kwargs

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_classified(self):
        conn = _FakeConnection(SimpleNamespace(stdout="", stderr="sudo: a password is required", exit_status=1))
        with patch("fleetpower.remote.ssh.asyncssh.connect", MagicMock(return_value=conn)):
            with pytest.raises(CommandError) as exc:
                await SSHClient().execute("nas.lan", 22, "root", "", "sudo true")
        assert exc.value.kind == CommandError.SUDO_PASSWORD_REQUIRED
        assert exc.value.command == "sudo true"

    @pytest.mark.asyncio
    async def test_dial_failure_is_classified(self):
        connect = MagicMock(side_effect=ConnectionRefusedError(111, "Connect call failed"))
        with patch("fleetpower.remote.ssh.asyncssh.connect", connect):
            with pytest.raises(CommandError) as exc:
                await SSHClient().test_connection("nas.lan", 22, "root")
        assert exc.value.kind == CommandError.CONNECTION
        assert exc.value.is_connectivity

    @pytest.mark.asyncio
    async def test_auth_failure_is_classified(self):
        connect = MagicMock(side_effect=asyncssh.PermissionDenied("Permission denied"))
        with patch("fleetpower.remote.ssh.asyncssh.connect", connect):
            with pytest.raises(CommandError) as exc:
                await SSHClient().test_connection("nas.lan", 22, "root")
        assert exc.value.kind == CommandError.AUTHENTICATION
