"""Clients for the protocols used to reach and actuate nodes."""
