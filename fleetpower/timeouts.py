"""Centralized timeout policy for remote calls.

All timeouts for external dependencies are defined here. Wrapping coroutines
with `with_timeout()` gives uniform logging and error typing on timeout.
"""
from __future__ import annotations

import asyncio
import logging

from fleetpower.errors import ConnectivityError

logger = logging.getLogger(__name__)

# SSH dial timeout; no per-session deadline once connected
SSH_CONNECT_TIMEOUT = 10.0

# Hypervisor management API round trip
HYPERVISOR_HTTP_TIMEOUT = 30.0

# Waiting on a hypervisor task (UPID) to finish
TASK_WAIT_TIMEOUT = 60.0

# Polling period while waiting on a hypervisor task
TASK_POLL_INTERVAL = 1.0

# TCP liveness probe per port
LIVENESS_TIMEOUT = 5.0


async def with_timeout(coro, timeout: float, description: str = "operation"):
    """Wrap any coroutine with a timeout and descriptive warning on failure.

    Args:
        coro: Awaitable coroutine
        timeout: Timeout in seconds
        description: Human-readable description for log messages

    Returns:
        Result of the coroutine

    Raises:
        ConnectivityError: If the operation exceeds the timeout
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(f"Timeout after {timeout}s: {description}")
        raise ConnectivityError(f"timed out after {timeout}s: {description}") from e
