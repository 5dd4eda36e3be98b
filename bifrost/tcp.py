"""Length-delimited TCP transport with request/response matching by message id."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import struct
from collections.abc import Awaitable, Callable
from datetime import timedelta

from . import shortcut
from .codec import STANDALONE_ADDRESS, hash_str

logger = logging.getLogger(__name__)

TcpCallback = Callable[[bytes], Awaitable[bytes]]

DISABLE_SHORTCUT = False
DEFAULT_TIMEOUT = 2.0
MAX_FRAME_LENGTH = 8 * 1024 * 1024

_LENGTH = struct.Struct(">I")
_MSG_ID = struct.Struct("<Q")


def _seconds(timeout: timedelta | float) -> float:
    if isinstance(timeout, timedelta):
        return timeout.total_seconds()
    return float(timeout)


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"invalid address {address!r}, expected host:port")
    return host.strip("[]"), int(port)


async def _read_frame(reader: asyncio.StreamReader) -> bytes:
    """Read one length-prefixed frame; raises IncompleteReadError at end of stream."""
    (length,) = _LENGTH.unpack(await reader.readexactly(_LENGTH.size))
    if length > MAX_FRAME_LENGTH:
        raise ValueError(f"frame of {length} bytes exceeds the maximum of {MAX_FRAME_LENGTH}")
    return await reader.readexactly(length)


def _encode_frame(payload: bytes) -> bytes:
    if len(payload) > MAX_FRAME_LENGTH:
        raise ValueError(
            f"frame of {len(payload)} bytes exceeds the maximum of {MAX_FRAME_LENGTH}"
        )
    return _LENGTH.pack(len(payload)) + payload


class TcpClient:
    """A connection to one server; concurrent requests are matched by message id.

    When the server lives in this process the requests go through the
    in-process shortcut registry instead of a socket.
    """

    def __init__(
        self,
        server_id: int,
        timeout: float,
        reader: asyncio.StreamReader | None = None,
        writer: asyncio.StreamWriter | None = None,
        address: str = "",
    ) -> None:
        self.server_id = server_id
        self.address = address
        self.timeout = timeout
        self._reader = reader
        self._writer = writer
        self._pending: dict[int, asyncio.Future[bytes]] = {}
        self._counter = itertools.count()
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        if reader is not None:
            self._reader_task = asyncio.create_task(self._receive_loop())

    @property
    def is_local(self) -> bool:
        """True when requests bypass the network."""
        return self._writer is None

    @classmethod
    async def connect(
        cls, address: str, timeout: timedelta | float = DEFAULT_TIMEOUT
    ) -> TcpClient:
        """Connect to a server, preferring a local shortcut when one is registered."""
        seconds = _seconds(timeout)
        server_id = hash_str(address)
        logger.debug(
            "TCP connect to %s, server id %d, timeout %dms", address, server_id, seconds * 1000
        )
        if not DISABLE_SHORTCUT and await shortcut.is_local(server_id):
            logger.debug("Local connection, using shortcut")
            return cls(server_id, seconds, address=address)
        if address == STANDALONE_ADDRESS:
            raise ConnectionError("STANDALONE server is not found")
        host, port = _split_address(address)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), seconds
            )
        except asyncio.TimeoutError as exc:
            raise TimeoutError(f"connecting to {address} timed out") from exc
        return cls(server_id, seconds, reader, writer, address)

    async def _receive_loop(self) -> None:
        assert self._reader is not None
        try:
            while True:
                frame = await _read_frame(self._reader)
                if len(frame) < _MSG_ID.size:
                    logger.error("Received truncated frame from %s", self.address)
                    continue
                (msg_id,) = _MSG_ID.unpack_from(frame)
                future = self._pending.pop(msg_id, None)
                if future is None:
                    logger.warning("Received response for unknown message %d", msg_id)
                elif not future.done():
                    future.set_result(frame[_MSG_ID.size:])
        except (asyncio.IncompleteReadError, ConnectionError, ValueError) as exc:
            logger.debug("Stream from TCP server %s broken: %s", self.address, exc)
        finally:
            self._fail_pending(ConnectionError(f"connection to {self.address} closed"))

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def send_msg(self, msg: bytes) -> bytes:
        """Send a request and wait for its response."""
        if self._writer is None:
            return await shortcut.call(self.server_id, bytes(msg))
        if self._reader_task is not None and self._reader_task.done():
            raise ConnectionError(f"connection to {self.address} closed")
        msg_id = next(self._counter)
        future: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        frame = _encode_frame(_MSG_ID.pack(msg_id) + bytes(msg))
        try:
            async with self._write_lock:
                self._writer.write(frame)
                await asyncio.wait_for(self._writer.drain(), self.timeout)
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(f"request {msg_id} to {self.address} timed out") from exc
        finally:
            self._pending.pop(msg_id, None)

    async def close(self) -> None:
        """Close the connection and fail any requests still waiting."""
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        if self._writer is not None:
            self._writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await self._writer.wait_closed()
        self._fail_pending(ConnectionError(f"connection to {self.address} closed"))

    async def __aenter__(self) -> TcpClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class TcpServer:
    """Serves a request callback over length-delimited frames."""

    def __init__(self, address: str, callback: TcpCallback) -> None:
        self.address = address
        self.callback = callback
        self._server: asyncio.AbstractServer | None = None
        self._connections: set[asyncio.Task[None]] = set()

    @property
    def bound_address(self) -> str:
        """The address actually listened on, useful when binding port 0."""
        if self._server is None or not self._server.sockets:
            return self.address
        host, port = self._server.sockets[0].getsockname()[:2]
        return f"{host}:{port}"

    async def start(self) -> None:
        """Register the shortcut and, unless standalone, begin listening."""
        await shortcut.register_server(self.address, self.callback)
        if self.address == STANDALONE_ADDRESS or self._server is not None:
            return
        host, port = _split_address(self.address)
        self._server = await asyncio.start_server(self._handle, host, port)

    async def serve(self) -> None:
        """Start and serve until cancelled; returns at once for a standalone server."""
        await self.start()
        if self._server is not None:
            await self._server.serve_forever()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            while True:
                try:
                    frame = await _read_frame(reader)
                except asyncio.IncompleteReadError:
                    break
                except ValueError as exc:
                    logger.error("error on decoding from socket; error = %s", exc)
                    break
                if len(frame) < _MSG_ID.size:
                    logger.error("error on decoding from socket; frame too short")
                    continue
                msg_id_bytes = frame[:_MSG_ID.size]
                result = await self.callback(frame[_MSG_ID.size:])
                try:
                    writer.write(_encode_frame(msg_id_bytes + bytes(result)))
                    await writer.drain()
                except (ConnectionError, ValueError) as exc:
                    logger.error("Error on TCP callback %s", exc)
        except ConnectionError as exc:
            logger.debug("connection dropped: %s", exc)
        finally:
            if task is not None:
                self._connections.discard(task)
            writer.close()
            with contextlib.suppress(ConnectionError, OSError, asyncio.CancelledError):
                await writer.wait_closed()

    async def close(self) -> None:
        """Stop listening and drop open connections."""
        for task in list(self._connections):
            task.cancel()
        for task in list(self._connections):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def __aenter__(self) -> TcpServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()