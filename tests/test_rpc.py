import asyncio
import contextlib
import socket

import pytest

from bifrost import tcp
from bifrost.codec import hash_str
from bifrost.rpc import (
    ClientPool,
    RPCClient,
    RPCError,
    RPCRequestError,
    RPCService,
    Server,
    decode_res,
    encode_res,
    prepend_u64,
    read_u64_head,
)


class EchoService(RPCService):
    def __init__(self):
        self.shortcuts = []

    async def dispatch(self, data):
        if data == b"fail":
            raise RPCError("no such function", RPCRequestError.FUNCTION_ID_NOT_FOUND)
        if data == b"boom":
            raise ValueError("broken")
        return data[::-1]

    async def register_shortcut_service(self, server_id, service_id):
        self.shortcuts.append((server_id, service_id))


def _free_address():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return f"127.0.0.1:{sock.getsockname()[1]}"


@contextlib.asynccontextmanager
async def _running(service, service_id=0):
    address = _free_address()
    server = Server(address)
    await server.register_service(service_id, service)
    await server.listen_and_resume()
    client = await RPCClient.connect(address)
    try:
        yield server, client
    finally:
        await client.close()
        await server.close()


def test_encode_success_prefixes_zero_byte():
    assert encode_res(b"abc") == b"\x00abc"


@pytest.mark.parametrize(
    "error, expected",
    [
        (RPCRequestError.FUNCTION_ID_NOT_FOUND, bytes([1])),
        (RPCRequestError.SERVICE_ID_NOT_FOUND, bytes([2])),
        (RPCRequestError.BAD_REQUEST, bytes([255])),
        (RPCRequestError.OTHER, bytes([255])),
    ],
)
def test_encode_errors_use_wire_codes(error, expected):
    assert encode_res(error) == expected


@pytest.mark.parametrize("body", [b"", b"hello", bytes(range(256))])
def test_decode_round_trips_success(body):
    assert decode_res(encode_res(body)) == body


@pytest.mark.parametrize(
    "error, received",
    [
        (RPCRequestError.FUNCTION_ID_NOT_FOUND, RPCRequestError.FUNCTION_ID_NOT_FOUND),
        (RPCRequestError.SERVICE_ID_NOT_FOUND, RPCRequestError.SERVICE_ID_NOT_FOUND),
        (RPCRequestError.BAD_REQUEST, RPCRequestError.OTHER),
        (RPCRequestError.OTHER, RPCRequestError.OTHER),
    ],
)
def test_decode_raises_request_errors(error, received):
    with pytest.raises(RPCError) as info:
        decode_res(encode_res(error))
    assert info.value.request_error is received


def test_decode_empty_response_raises():
    with pytest.raises(RPCError) as info:
        decode_res(b"")
    assert info.value.request_error is None


def test_prepend_u64_is_little_endian():
    assert prepend_u64(1, b"") == bytes([1, 0, 0, 0, 0, 0, 0, 0])


@pytest.mark.parametrize("num", [0, 1, 12345, (1 << 64) - 1])
def test_prepend_and_read_round_trip(num):
    assert read_u64_head(prepend_u64(num, b"body")) == (num, b"body")


def test_read_u64_head_rejects_short_data():
    with pytest.raises(ValueError):
        read_u64_head(b"\x01\x02")


@pytest.mark.parametrize("num", [-1, 1 << 64])
def test_prepend_u64_rejects_out_of_range(num):
    with pytest.raises(ValueError):
        prepend_u64(num, b"")


def test_server_id_is_hash_of_address():
    address = _free_address()
    assert Server(address).server_id == hash_str(address)


@pytest.mark.asyncio
async def test_call_through_shortcut_and_registration():
    service = EchoService()
    async with _running(service, service_id=3) as (server, client):
        assert client.server_id == server.server_id
        assert await client.send_async(3, b"hello") == b"olleh"
        assert service.shortcuts == [(server.server_id, 3)]


@pytest.mark.asyncio
async def test_unknown_service_is_reported():
    async with _running(EchoService(), service_id=0) as (_server, client):
        with pytest.raises(RPCError) as info:
            await client.send_async(7, b"x")
        assert info.value.request_error is RPCRequestError.SERVICE_ID_NOT_FOUND


@pytest.mark.asyncio
async def test_service_rejection_is_forwarded():
    async with _running(EchoService()) as (_server, client):
        with pytest.raises(RPCError) as info:
            await client.send_async(0, b"fail")
        assert info.value.request_error is RPCRequestError.FUNCTION_ID_NOT_FOUND


@pytest.mark.asyncio
async def test_service_crash_is_reported_as_other():
    async with _running(EchoService()) as (_server, client):
        with pytest.raises(RPCError) as info:
            await client.send_async(0, b"boom")
        assert info.value.request_error is RPCRequestError.OTHER


@pytest.mark.asyncio
async def test_removed_service_is_not_found():
    async with _running(EchoService()) as (server, client):
        assert await client.send_async(0, b"ab") == b"ba"
        await server.remove_service(0)
        with pytest.raises(RPCError) as info:
            await client.send_async(0, b"ab")
        assert info.value.request_error is RPCRequestError.SERVICE_ID_NOT_FOUND


@pytest.mark.asyncio
async def test_call_over_tcp_without_shortcut(monkeypatch):
    monkeypatch.setattr(tcp, "DISABLE_SHORTCUT", True)
    service = EchoService()
    async with _running(service) as (_server, client):
        assert await client.send_async(0, b"network") == b"krowten"
        assert service.shortcuts == []


@pytest.mark.asyncio
async def test_many_parallel_requests_over_tcp(monkeypatch):
    monkeypatch.setattr(tcp, "DISABLE_SHORTCUT", True)
    async with _running(EchoService()) as (_server, client):
        bodies = [f"John {i}".encode() for i in range(100)]
        results = await asyncio.gather(*(client.send_async(0, body) for body in bodies))
        assert results == [body[::-1] for body in bodies]


@pytest.mark.asyncio
async def test_send_after_server_closed_raises(monkeypatch):
    monkeypatch.setattr(tcp, "DISABLE_SHORTCUT", True)
    address = _free_address()
    server = Server(address)
    await server.register_service(0, EchoService())
    await server.listen_and_resume()
    client = await RPCClient.connect(address)
    try:
        assert await client.send_async(0, b"up") == b"pu"
        await server.close()
        await asyncio.sleep(0.1)
        with pytest.raises(RPCError):
            await client.send_async(0, b"down")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_pool_reuses_clients():
    address = _free_address()
    server = Server(address)
    await server.register_service(0, EchoService())
    await server.listen_and_resume()
    pool = ClientPool()
    try:
        first = await pool.get(address)
        second = await pool.get(address)
        assert first is second

        def no_address(_server_id):
            raise AssertionError("address should not be needed for a pooled client")

        third = await pool.get_by_id(hash_str(address), no_address)
        assert third is first
        assert await third.send_async(0, b"pool") == b"loop"
    finally:
        await first.close()
        await server.close()


@pytest.mark.asyncio
async def test_pool_get_by_id_passes_server_id_to_addr_fn():
    address = _free_address()
    server = Server(address)
    await server.register_service(0, EchoService())
    await server.listen_and_resume()
    pool = ClientPool()
    seen = []

    def addr_fn(server_id):
        seen.append(server_id)
        return address

    try:
        client = await pool.get_by_id(server.server_id, addr_fn)
        assert seen == [server.server_id]
        assert client.address == address
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_pool_connection_failure_raises(monkeypatch):
    monkeypatch.setattr(tcp, "DISABLE_SHORTCUT", True)
    pool = ClientPool()
    with pytest.raises(OSError):
        await pool.get(_free_address())