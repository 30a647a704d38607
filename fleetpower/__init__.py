"""Power-lifecycle reconciliation engine for homelab fleets."""

__version__ = "0.1.0"
