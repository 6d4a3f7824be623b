"""
ddash -- sandboxed command runner with interactive network control.

Runs a command inside an OS-level sandbox and routes its network traffic
through a local proxy that asks before reaching any new domain.
"""

__version__ = "0.1.0"
