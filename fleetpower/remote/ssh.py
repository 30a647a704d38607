"""Remote command execution over SSH.

Each operation dials its own connection and tears it down afterwards; there
is no connection pool. Host key checking is disabled, which is a known
weakening accepted for homelab use.
"""

from __future__ import annotations

import asyncio
import logging

import asyncssh

from fleetpower.errors import classify_ssh_error
from fleetpower.timeouts import SSH_CONNECT_TIMEOUT


class SSHClient:
    """Run commands on a remote host with key-based authentication.

    Authentication uses ``key_path`` when given, otherwise whatever the SSH
    agent or the default identity files provide.
    """

    def __init__(
        self,
        connect_timeout: float = SSH_CONNECT_TIMEOUT,
        logger: logging.Logger | None = None,
    ):
        self.connect_timeout = connect_timeout
        self._log = logger or logging.getLogger(__name__)

    async def _run(self, host: str, port: int, user: str, key_path: str, command: str) -> str:
        options = {
            "port": port,
            "username": user,
            "known_hosts": None,  # Disable host key checking
            "connect_timeout": self.connect_timeout,
        }
        if key_path:
            options["client_keys"] = [key_path]

        try:
            async with asyncssh.connect(host, **options) as conn:
                result = await conn.run(command, check=False)
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            self._log.debug(f"SSH to {user}@{host}:{port} failed: {e}")
            raise classify_ssh_error(e, command) from e

        stdout = result.stdout if isinstance(result.stdout, str) else (result.stdout or b"").decode(errors="replace")
        stderr = result.stderr if isinstance(result.stderr, str) else (result.stderr or b"").decode(errors="replace")

        if result.exit_status != 0:
            detail = stderr.strip() or stdout.strip() or f"exit status {result.exit_status}"
            raise classify_ssh_error(RuntimeError(detail), command, stdout + stderr)
        return stdout

    async def test_connection(self, host: str, port: int, user: str, key_path: str = "") -> None:
        """Raise CommandError unless a trivial command runs on the host."""
        await self._run(host, port, user, key_path, "echo 'Connection successful'")

    async def execute(self, host: str, port: int, user: str, key_path: str, command: str) -> None:
        """Run a command, discarding its output."""
        await self._run(host, port, user, key_path, command)

    async def execute_with_output(self, host: str, port: int, user: str, key_path: str, command: str) -> str:
        """Run a command and return its stripped stdout."""
        output = await self._run(host, port, user, key_path, command)
        return output.strip()
