"""Upstream clients: JSON-RPC transport, node registry and GeoIP."""
