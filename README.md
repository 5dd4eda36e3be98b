# bifrost

A small asyncio toolkit for building distributed services:

- **RPC over TCP** (`bifrost.rpc`, `bifrost.tcp`). Each message is a
  length-delimited frame tagged with a message id, so many requests can
  share one connection at once. A `Server` hosts any number of services,
  each under its own numeric service id.
- **Shortcuts** (`bifrost.shortcut`): when the server you connect to was
  started in the same process, requests are handed straight to it and
  never touch the network.
- **Vector clocks** (`bifrost.vector_clock`) for ordering events across
  servers.
- Helpers for serialization, hashing, time and numbers.

No third-party packages are needed at run time.

## Installation

```
pip install .
```

For the test suite:

```
pip install .[test]
pytest
```

## Serving and calling a service

A service subclasses `RPCService` and implements `dispatch`, which gets the
raw request body as bytes and returns the response body as bytes.

```python
import asyncio
from bifrost.rpc import RPCClient, RPCService, Server


class Upper(RPCService):
    async def dispatch(self, data):
        return bytes(data).upper()


async def main():
    server = Server("127.0.0.1:1300")
    await server.register_service(0, Upper())
    await server.listen_and_resume()

    client = await RPCClient.connect("127.0.0.1:1300")
    print(await client.send_async(0, b"hello"))  # b'HELLO'

    await client.close()
    await server.close()


asyncio.run(main())
```

- `Server.listen_and_resume()` starts accepting connections and returns.
  `Server.listen()` serves until it is cancelled. `Server`, `RPCClient`,
  `TcpServer` and `TcpClient` can also be used as async context managers.
- `Server.register_service` also records the service in an in-process
  table, which `lookup_shortcut(server_id, service_id)` reads. Set
  `bifrost.tcp.DISABLE_SHORTCUT = True` to turn shortcuts off.
- Failures raise `RPCError`. If the server rejected the request,
  `request_error` holds an `RPCRequestError`: `SERVICE_ID_NOT_FOUND`,
  `FUNCTION_ID_NOT_FOUND`, `BAD_REQUEST` or `OTHER`. A service can raise
  `RPCError` with a `request_error` to reject a request itself. Transport
  failures also come back as `RPCError`.
- `ClientPool.get(address)` and `ClientPool.get_by_id(server_id, addr_fn)`
  keep one client for each server. Connecting times out after five seconds.
  The server id is `bifrost.codec.hash_str(address)`. A shared pool is
  available as `bifrost.rpc.DEFAULT_CLIENT_POOL`.
- The wire helpers `encode_res`, `decode_res`, `read_u64_head` and
  `prepend_u64` are public.

### Transport

`bifrost.tcp.TcpServer(address, callback)` serves an async
`bytes -> bytes` callback. `TcpClient.connect(address, timeout=2.0)`
connects to it, and `send_msg` sends a request and waits for its answer.
Frames carry a 4-byte big-endian length and may be at most 8 MiB. The
address `"STANDALONE"` registers a shortcut only and opens no socket.
`TcpServer.bound_address` gives the real port when you bind port 0.

## Vector clocks

```python
from bifrost.vector_clock import Relation, VectorClock

a = VectorClock()
b = VectorClock()
a.inc(1)
assert a.relation(b) is Relation.AFTER
assert b < a
b.merge_with(a)
assert a.equals(b)
```

`learn_from` copies in only the servers that the clock is missing.
`ServerVectorClock(address)` wraps a clock that belongs to one server. It
is guarded by a lock, and `to_clock()` returns a snapshot of it.

## Utilities

- `bifrost.codec`: `serialize` and `deserialize` (compact JSON; dataclasses
  and enums are encoded too, and `deserialize` returns `None` on bad
  input), plus `hash_bytes`, `hash_str` and `hash_value`, which give stable
  unsigned 64-bit hashes.
- `bifrost.mathutil`: `minimum`, `maximum` and `avg_scale`. Each returns
  `None` for empty input.
- `bifrost.timeutil`: `get_time` (Unix milliseconds), `duration_to_ms`,
  `async_wait` and `async_wait_secs` (which waits two seconds).

## What it does not do

The package has no layer for declaring named service functions. Nothing
routes calls to a method by the hash of its name, and nothing turns
arguments and results into bytes for you. `dispatch` works on raw bytes,
so each service decodes its own requests, for example with
`bifrost.codec`. There is no command-line program.