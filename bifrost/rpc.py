"""Service multiplexing over the TCP transport: servers, clients and a client pool."""

from __future__ import annotations

import abc
import asyncio
import enum
import logging
import struct
from collections.abc import Callable

from . import tcp
from .codec import hash_str
from .tcp import TcpClient, TcpServer

logger = logging.getLogger(__name__)

_U64 = struct.Struct("<Q")
_U64_MAX = (1 << 64) - 1
_OK_CODE = 0
_OTHER_CODE = 255
POOL_CONNECT_TIMEOUT = 5.0


class RPCRequestError(enum.Enum):
    """Why a server could not answer a request."""

    FUNCTION_ID_NOT_FOUND = "FunctionIdNotFound"
    SERVICE_ID_NOT_FOUND = "ServiceIdNotFound"
    BAD_REQUEST = "BadRequest"
    OTHER = "Other"

    @property
    def code(self) -> int:
        """The status byte this error is sent as."""
        return _ERROR_CODES.get(self, _OTHER_CODE)

    @classmethod
    def from_code(cls, code: int) -> RPCRequestError:
        """The error a received status byte stands for."""
        for error, error_code in _ERROR_CODES.items():
            if error_code == code:
                return error
        return cls.OTHER


_ERROR_CODES = {
    RPCRequestError.FUNCTION_ID_NOT_FOUND: 1,
    RPCRequestError.SERVICE_ID_NOT_FOUND: 2,
}


class RPCError(Exception):
    """A remote call failed; request_error is set when the server rejected it."""

    def __init__(self, message: str, request_error: RPCRequestError | None = None) -> None:
        super().__init__(message)
        self.request_error = request_error


_shortcut_services: dict[tuple[int, int], RPCService] = {}


def lookup_shortcut(server_id: int, service_id: int) -> RPCService | None:
    """Return the service registered in this process under these ids, if any."""
    return _shortcut_services.get((server_id, service_id))


class RPCService(abc.ABC):
    """Something a Server can route requests to."""

    @abc.abstractmethod
    async def dispatch(self, data: bytes) -> bytes:
        """Answer a request body; raise RPCError with a request_error to reject it."""

    async def register_shortcut_service(self, server_id: int, service_id: int) -> None:
        """Record this service as reachable in-process under these ids."""
        _shortcut_services[(server_id, service_id)] = self


def encode_res(result: bytes | bytearray | memoryview | RPCRequestError) -> bytes:
    """Encode a dispatch outcome: a zero byte and the body, or one error byte."""
    if isinstance(result, RPCRequestError):
        return bytes([result.code])
    return bytes([_OK_CODE]) + bytes(result)


def decode_res(data: bytes | bytearray | memoryview) -> bytes:
    """Return the body of an encoded response, raising RPCError for an error status."""
    raw = bytes(data)
    if not raw:
        raise RPCError("Client cannot decode response")
    if raw[0] == _OK_CODE:
        return raw[1:]
    error = RPCRequestError.from_code(raw[0])
    raise RPCError(f"request rejected: {error.value}", error)


def read_u64_head(data: bytes | bytearray | memoryview) -> tuple[int, bytes]:
    """Split a little-endian u64 off the front of the data."""
    raw = bytes(data)
    if len(raw) < _U64.size:
        raise ValueError(f"need {_U64.size} bytes for a u64 head, got {len(raw)}")
    (num,) = _U64.unpack_from(raw)
    return num, raw[_U64.size:]


def prepend_u64(num: int, data: bytes | bytearray | memoryview) -> bytes:
    """Put a little-endian u64 in front of the data."""
    if not 0 <= num <= _U64_MAX:
        raise ValueError(f"{num} does not fit in an unsigned 64-bit integer")
    return _U64.pack(num) + bytes(data)


class Server:
    """Routes requests arriving at one address to the services registered on it."""

    def __init__(self, address: str) -> None:
        self.address = address
        self.server_id = hash_str(address)
        self._services: dict[int, RPCService] = {}
        self._tcp = TcpServer(address, self._handle)

    async def _handle(self, data: bytes) -> bytes:
        try:
            service_id, body = read_u64_head(data)
        except ValueError as exc:
            logger.error("Malformed request: %s", exc)
            return encode_res(RPCRequestError.BAD_REQUEST)
        logger.debug("Processing request for service %d", service_id)
        service = self._services.get(service_id)
        if service is None:
            return encode_res(RPCRequestError.SERVICE_ID_NOT_FOUND)
        try:
            return encode_res(await service.dispatch(body))
        except RPCError as exc:
            return encode_res(exc.request_error or RPCRequestError.OTHER)
        except Exception:
            logger.exception("Service %d failed to dispatch", service_id)
            return encode_res(RPCRequestError.OTHER)

    async def listen(self) -> None:
        """Serve until cancelled."""
        await self._tcp.serve()

    async def listen_and_resume(self) -> None:
        """Begin accepting requests and return while they are served in the background."""
        await self._tcp.start()

    async def register_service(self, service_id: int, service: RPCService) -> None:
        """Route requests for service_id to the service."""
        if not tcp.DISABLE_SHORTCUT:
            await service.register_shortcut_service(self.server_id, service_id)
        else:
            logger.debug("SERVICE SHORTCUT DISABLED")
        self._services[service_id] = service

    async def remove_service(self, service_id: int) -> None:
        """Stop routing requests for service_id."""
        self._services.pop(service_id, None)

    async def close(self) -> None:
        """Stop listening."""
        await self._tcp.close()

    async def __aenter__(self) -> Server:
        await self.listen_and_resume()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class RPCClient:
    """A connection to one server, able to call any service on it."""

    def __init__(self, client: TcpClient, address: str) -> None:
        self._client = client
        self.server_id = client.server_id
        self.address = address

    @classmethod
    async def connect(cls, address: str) -> RPCClient:
        """Connect to the server at an address."""
        return cls(await TcpClient.connect(address), address)

    async def send_async(self, service_id: int, data: bytes | bytearray | memoryview) -> bytes:
        """Send a request body to a service and return the response body."""
        payload = prepend_u64(service_id, data)
        try:
            response = await self._client.send_msg(payload)
        except OSError as exc:
            raise RPCError(f"transport error: {exc}") from exc
        return decode_res(response)

    async def close(self) -> None:
        """Close the connection."""
        await self._client.close()

    async def __aenter__(self) -> RPCClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class ClientPool:
    """Shares one client per server id."""

    def __init__(self) -> None:
        self._clients: dict[int, RPCClient] = {}

    async def get(self, address: str) -> RPCClient:
        """Return the pooled client for an address, connecting if needed."""
        return await self.get_by_id(hash_str(address), lambda _server_id: address)

    async def get_by_id(self, server_id: int, addr_fn: Callable[[int], str]) -> RPCClient:
        """Return the pooled client for a server id; addr_fn gives its address when new."""
        client = self._clients.get(server_id)
        if client is not None:
            return client
        try:
            client = await asyncio.wait_for(
                RPCClient.connect(addr_fn(server_id)), POOL_CONNECT_TIMEOUT
            )
        except asyncio.TimeoutError as exc:
            raise TimeoutError(f"connecting to server {server_id} timed out") from exc
        existing = self._clients.get(server_id)
        if existing is not None:
            await client.close()
            return existing
        self._clients[server_id] = client
        return client


DEFAULT_CLIENT_POOL = ClientPool()