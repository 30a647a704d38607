"""YAML inventory of managed nodes.

Example::

    nodes:
      - id: nas
        name: NAS
        hostname: nas.lan
        mac_address: "AA:BB:CC:DD:EE:FF"
        desired_state: on
        services:
          - {name: web, port: 443}
      - id: pve1
        name: Hypervisor
        hostname: pve1.lan
        hypervisor:
          token: root@pam!fleetpower=0123-abcd
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fleetpower.config import settings
from fleetpower.errors import InventoryError
from fleetpower.models import HypervisorCredentials, Node, Service, detect_service_type
from fleetpower.state import PowerState, ServiceSource
from fleetpower.storage import NodeStore

logger = logging.getLogger(__name__)


class ServiceEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    port: int = Field(ge=1, le=65535)
    type: str | None = None


class HypervisorEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str
    node: str = ""


class NodeEntry(BaseModel):
    """One ``nodes:`` item as written by the operator."""

    model_config = ConfigDict(extra="forbid")

    id: str
    name: str = ""
    hostname: str = ""
    mac_address: str = ""
    parent_id: str | None = None
    ssh_user: str | None = None
    ssh_port: int | None = None
    ssh_key_path: str | None = None
    desired_state: PowerState = PowerState.UNKNOWN
    services: list[ServiceEntry] = Field(default_factory=list)
    hypervisor: HypervisorEntry | None = None

    @field_validator("desired_state", mode="before")
    @classmethod
    def _yaml_booleans(cls, v):
        # YAML 1.1 reads bare on/off as booleans
        if v is True:
            return PowerState.ON
        if v is False:
            return PowerState.OFF
        return v

    def to_node(self) -> Node:
        services = [
            Service(
                id=f"{self.id}-{s.port}",
                node_id=self.id,
                name=s.name,
                port=s.port,
                type=s.type or detect_service_type(s.port),
                source=ServiceSource.CONFIG,
            )
            for s in self.services
        ]
        credentials = None
        hypervisor_node = ""
        if self.hypervisor is not None:
            credentials = HypervisorCredentials.parse(self.hypervisor.token)
            hypervisor_node = self.hypervisor.node

        return Node(
            id=self.id,
            name=self.name or self.id,
            hostname=self.hostname,
            mac_address=self.mac_address,
            parent_id=self.parent_id,
            ssh_user=self.ssh_user or settings.ssh_default_user,
            ssh_port=self.ssh_port or settings.ssh_default_port,
            ssh_key_path=self.ssh_key_path if self.ssh_key_path is not None else settings.ssh_default_key_path,
            desired_state=self.desired_state,
            services=services,
            hypervisor=credentials,
            hypervisor_node=hypervisor_node,
        )


def load_inventory(path: str | Path) -> list[Node]:
    """Read and validate an inventory file.

    Raises:
        InventoryError: the file is missing, not YAML, or fails validation.
    """
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text())
    except FileNotFoundError as e:
        raise InventoryError(f"inventory file not found: {path}") from e
    except yaml.YAMLError as e:
        raise InventoryError(f"invalid YAML in {path}: {e}") from e

    if raw is None:
        return []
    if not isinstance(raw, dict) or not isinstance(raw.get("nodes", []), list):
        raise InventoryError(f"{path}: expected a mapping with a 'nodes' list")

    nodes: list[Node] = []
    seen: set[str] = set()
    for index, item in enumerate(raw.get("nodes") or []):
        try:
            entry = NodeEntry.model_validate(item)
            node = entry.to_node()
        except (ValidationError, ValueError) as e:
            raise InventoryError(f"{path}: invalid node #{index}: {e}") from e
        if node.id in seen:
            raise InventoryError(f"{path}: duplicate node ID '{node.id}'")
        seen.add(node.id)
        nodes.append(node)

    logger.info(f"Loaded {len(nodes)} nodes from {path}")
    return nodes


def seed_store(store: NodeStore, nodes: list[Node]) -> int:
    """Add inventory nodes not already in the store; returns how many were added."""
    existing = {node.id for node in store.get_all()}
    added = 0
    for node in nodes:
        if node.id in existing:
            logger.debug(f"Node {node.id} already present, skipping")
            continue
        store.add(node)
        added += 1
    return added
