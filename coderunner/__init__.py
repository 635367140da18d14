"""Distributed remote code execution: gateway and worker nodes."""

__version__ = "0.1.0"
