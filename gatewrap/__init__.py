"""
Gatewrap - setup wizard and authenticated proxy for the openclaw gateway.

Supervises the gateway process on a loopback port, onboards it from
environment variables, auto-approves loopback operator devices and proxies
HTTP and WebSocket traffic behind a single operator password.
"""

__version__ = "0.1.0"
