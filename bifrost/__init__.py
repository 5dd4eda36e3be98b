"""Asyncio RPC over TCP, in-process shortcuts, vector clocks and small helpers."""

__version__ = "0.1.0"

__all__ = [
    "codec",
    "mathutil",
    "rpc",
    "shortcut",
    "tcp",
    "timeutil",
    "vector_clock",
]