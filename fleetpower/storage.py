"""Node inventory store.

The store is the only shared mutable resource in the controller. Every read
hands back a deep copy and every write stores a deep copy, so callers can
never alias a stored record. Mutations of one node are serialized by a lock;
nothing orders mutations across different nodes.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime

from fleetpower.errors import NodeNotFoundError
from fleetpower.models import Action, Node, SystemInfo, utcnow
from fleetpower.state import PowerState
from fleetpower.state_machine import PowerStateMachine

# Most recent actions kept per node
MAX_ACTIONS = 50

# Not patchable through update_fields; the rest have dedicated mutators
RESERVED_FIELDS = frozenset(
    {
        "id",
        "current_state",
        "last_state_change",
        "total_on_time",
        "total_suspended_time",
        "total_off_time",
        "actions",
        "system_info",
    }
)


class NodeStore(ABC):
    """Storage contract the engine depends on."""

    @abstractmethod
    def get(self, node_id: str) -> Node:
        """Return a copy of one node or raise NodeNotFoundError."""

    @abstractmethod
    def get_all(self) -> list[Node]:
        """Return copies of every node."""

    @abstractmethod
    def add(self, node: Node) -> None:
        """Insert a new node."""

    @abstractmethod
    def delete(self, node_id: str) -> None:
        """Remove a node."""

    @abstractmethod
    def update(self, node: Node) -> None:
        """Replace a node wholesale (last writer wins)."""

    @abstractmethod
    def update_fields(self, node_id: str, **fields) -> Node:
        """Set individual node attributes in place and return a copy of the result.

        State, durations, actions and system info have dedicated mutators
        and are rejected here.
        """

    @abstractmethod
    def update_state(self, node_id: str, state: PowerState) -> None:
        """Set current state, rolling up the duration counters."""

    @abstractmethod
    def append_action(self, node_id: str, action: Action) -> None:
        """Append to the node's bounded action history."""

    @abstractmethod
    def get_system_info(self, node_id: str) -> SystemInfo | None:
        """Return a copy of the node's system snapshot, if any."""

    @abstractmethod
    def set_system_info(self, node_id: str, info: SystemInfo | None) -> None:
        """Store a system snapshot, stamping its update time."""


class MemoryNodeStore(NodeStore):
    """In-memory NodeStore keyed by node ID."""

    def __init__(self, clock=utcnow):
        self._nodes: dict[str, Node] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _require(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def get(self, node_id: str) -> Node:
        with self._lock:
            return self._require(node_id).model_copy(deep=True)

    def get_all(self) -> list[Node]:
        with self._lock:
            return [node.model_copy(deep=True) for node in self._nodes.values()]

    def add(self, node: Node) -> None:
        with self._lock:
            if node.id in self._nodes:
                raise ValueError(f"node with ID '{node.id}' already exists")
            stored = node.model_copy(deep=True)
            if stored.last_state_change is None:
                stored.last_state_change = self._clock()
            self._nodes[stored.id] = stored

    def delete(self, node_id: str) -> None:
        with self._lock:
            self._require(node_id)
            del self._nodes[node_id]

    def update(self, node: Node) -> None:
        with self._lock:
            self._require(node.id)
            self._nodes[node.id] = node.model_copy(deep=True)

    def update_fields(self, node_id: str, **fields) -> Node:
        reserved = RESERVED_FIELDS.intersection(fields)
        if reserved:
            raise ValueError(f"fields with dedicated mutators cannot be patched: {sorted(reserved)}")
        unknown = set(fields) - set(Node.model_fields)
        if unknown:
            raise ValueError(f"unknown node fields: {sorted(unknown)}")
        with self._lock:
            node = self._require(node_id)
            for name, value in fields.items():
                setattr(node, name, copy.deepcopy(value))
            return node.model_copy(deep=True)

    def update_state(self, node_id: str, state: PowerState) -> None:
        with self._lock:
            node = self._require(node_id)
            now = self._clock()
            self._roll_up_durations(node, now)
            node.current_state = state
            node.last_state_change = now

    def append_action(self, node_id: str, action: Action) -> None:
        with self._lock:
            node = self._require(node_id)
            node.actions.append(action)
            if len(node.actions) > MAX_ACTIONS:
                del node.actions[: len(node.actions) - MAX_ACTIONS]

    def get_system_info(self, node_id: str) -> SystemInfo | None:
        with self._lock:
            node = self._require(node_id)
            if node.system_info is None:
                return None
            return node.system_info.model_copy(deep=True)

    def set_system_info(self, node_id: str, info: SystemInfo | None) -> None:
        with self._lock:
            node = self._require(node_id)
            if info is None:
                node.system_info = None
                return
            stored = info.model_copy(deep=True)
            stored.last_updated = self._clock()
            node.system_info = stored

    @staticmethod
    def _roll_up_durations(node: Node, now: datetime) -> None:
        """Credit time since the last transition to the outgoing state."""
        if node.last_state_change is None:
            return
        elapsed = max(0.0, (now - node.last_state_change).total_seconds())
        bucket = PowerStateMachine.duration_bucket(node.current_state)
        if bucket == "on":
            node.total_on_time += elapsed
        elif bucket == "suspended":
            node.total_suspended_time += elapsed
        elif bucket == "off":
            node.total_off_time += elapsed
