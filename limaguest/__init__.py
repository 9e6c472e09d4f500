"""Guest agent for Lima-style Linux VMs: port reporting over a UNIX-socket HTTP API, plus host-side helpers."""

__version__ = "0.1.0"