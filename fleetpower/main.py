"""fleetpower controller entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import uuid

from prometheus_client import start_http_server

from fleetpower import __version__
from fleetpower.actuator import PowerActuator
from fleetpower.backends import HypervisorGuestBackend, PhysicalHostBackend
from fleetpower.config import Settings, settings
from fleetpower.detector import LivenessDetector
from fleetpower.discovery import GuestDiscovery
from fleetpower.errors import InventoryError
from fleetpower.inventory import load_inventory, seed_store
from fleetpower.logging_config import setup_logging
from fleetpower.probe import CapabilityProbe
from fleetpower.reconciler import ReconciliationLoop
from fleetpower.remote.commander import RemoteCommander
from fleetpower.remote.proxmox import ProxmoxClientFactory
from fleetpower.remote.ssh import SSHClient
from fleetpower.remote.wol import WakeOnLanSender
from fleetpower.storage import MemoryNodeStore, NodeStore

logger = logging.getLogger("fleetpower")


def build_loop(store: NodeStore, config: Settings) -> ReconciliationLoop:
    """Wire every component with its own named logger."""

    def log(name: str) -> logging.Logger:
        return logging.getLogger(f"fleetpower.{name}")

    ssh = SSHClient(connect_timeout=config.ssh_connect_timeout, logger=log("ssh"))
    commander = RemoteCommander(ssh, logger=log("commander"))
    clients = ProxmoxClientFactory(
        port=config.hypervisor_port,
        timeout=config.hypervisor_timeout,
        verify_tls=config.hypervisor_verify_tls,
        logger=log("proxmox"),
    )

    actuator = PowerActuator(
        store,
        PhysicalHostBackend(ssh, WakeOnLanSender(logger=log("wol")), logger=log("backends.physical")),
        HypervisorGuestBackend(store, clients, logger=log("backends.guest")),
        parent_settle_delay=config.parent_settle_delay,
        hypervisor_settle_delay=config.hypervisor_settle_delay,
        logger=log("actuator"),
    )
    detector = LivenessDetector(
        liveness_timeout=config.liveness_timeout,
        quick_scan_timeout=config.quick_scan_timeout,
        service_scan_timeout=config.service_scan_timeout,
        discovery_scan_timeout=config.discovery_scan_timeout,
        store=store,
        client_factory=clients,
        logger=log("detector"),
    )
    probe = CapabilityProbe(store, commander, logger=log("probe"))
    discovery = GuestDiscovery(
        store,
        commander,
        clients,
        token_user=config.hypervisor_token_user,
        logger=log("discovery"),
    )
    return ReconciliationLoop(
        store,
        detector,
        actuator,
        probe,
        discovery,
        config=config,
        logger=log("reconciler"),
    )


async def run(config: Settings, once: bool = False) -> int:
    store = MemoryNodeStore()
    try:
        added = seed_store(store, load_inventory(config.inventory_path))
    except InventoryError as e:
        logger.error(f"Failed to load inventory: {e}")
        return 1
    logger.info(f"Managing {added} nodes from {config.inventory_path}")

    loop = build_loop(store, config)

    if once:
        await loop.check_all()
        await loop.reconcile_all()
        return 0

    stop_event = asyncio.Event()
    event_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        event_loop.add_signal_handler(sig, stop_event.set)

    loop.start()
    await stop_event.wait()

    logger.info("Shutting down...")
    await loop.stop()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Homelab power lifecycle controller.")
    parser.add_argument("--inventory", default=settings.inventory_path, help="Path to the YAML node inventory.")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level (default: %(default)s).")
    parser.add_argument("--log-format", choices=("text", "json"), default=settings.log_format)
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=settings.metrics_port,
        help="Serve Prometheus metrics on this port (0 disables).",
    )
    parser.add_argument("--once", action="store_true", help="Run one detection and reconciliation pass, then exit.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args()

    settings.inventory_path = args.inventory
    settings.log_level = args.log_level
    settings.log_format = args.log_format
    settings.metrics_port = args.metrics_port
    if not settings.controller_id:
        settings.controller_id = str(uuid.uuid4())

    setup_logging(settings.controller_id)
    logger.info(f"fleetpower {__version__} starting (controller {settings.controller_id[:8]})")

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info(f"Prometheus metrics on port {settings.metrics_port}")

    return asyncio.run(run(settings, once=args.once))


if __name__ == "__main__":
    raise SystemExit(main())
