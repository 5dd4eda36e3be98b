"""In-process registry that lets clients reach local servers without sockets."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from .codec import hash_str

TcpCallback = Callable[[bytes], Awaitable[bytes]]

_callbacks: dict[int, TcpCallback] = {}


async def register_server(address: str, callback: TcpCallback) -> None:
    """Register the request handler of a server listening at an address."""
    _callbacks[hash_str(address)] = callback


async def call(server_id: int, data: bytes) -> bytes:
    """Hand a request straight to a locally registered server."""
    callback = _callbacks.get(server_id)
    if callback is None:
        raise ConnectionError("Cannot find callback for shortcut")
    return await callback(data)


async def is_local(server_id: int) -> bool:
    """True when a server with this id is registered in this process."""
    return server_id in _callbacks