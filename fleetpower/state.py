"""Centralized state enums for consistent state handling across the controller.

Power state rules (eligibility and post-action states) are defined in
state_machine.py.
"""

from enum import Enum


class PowerState(str, Enum):
    """Last-observed power classification of a node."""

    ON = "on"
    OFF = "off"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"  # Not yet observed, or waiting for confirmation after a wake
    INIT_FAILED = "init_failed"  # Capability probe could not reach the node


class SystemType(str, Enum):
    """Operating system family detected by the capability probe."""

    LINUX = "linux"
    WINDOWS = "windows"
    PROXMOX = "proxmox"
    UNKNOWN = "unknown"


class ActionType(str, Enum):
    """Kinds of audited actuation or probe attempts."""

    INITIALIZE = "initialize"
    WAKE = "wake"
    SUSPEND = "suspend"
    SHUTDOWN = "shutdown"
    STOP = "stop"
    RECONCILE = "reconcile"


class Initiator(str, Enum):
    """Who asked for an action."""

    MANUAL = "manual"
    SYSTEM = "system"
    RECONCILER = "reconciler"


class ServiceStatus(str, Enum):
    """Reachability of a single service port."""

    UP = "up"
    DOWN = "down"


class ServiceSource(str, Enum):
    """Where a service definition came from."""

    CONFIG = "config"
    DISCOVERED = "discovered"
