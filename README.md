# konnect

`konnect` multiplexes TCP connections over one bidirectional packet stream.
It has two sides:

* **Tunnel client** (`konnect.tunnel`, `konnect.conn`): sends a dial request
  through a proxy stream and hands back a `Conn` with `write`, `read` and
  `close`.
* **Agent** (`konnect.agent_client`, `konnect.clientset`, `konnect.endpoint`):
  runs on the node network side, keeps a client connected to every proxy
  server instance, and serves the dial, data and close requests that arrive
  on each stream by opening real TCP connections to the requested addresses.

The wire messages are in `konnect.packet`. Counters, gauges and histograms
with a Prometheus-style text exposition are in `konnect.metrics`, with the
client's and the agent's metric sets in `konnect.client_metrics` and
`konnect.agent_metrics`. Feature gates are in `konnect.features`.

The package uses only the standard library.

## Installing

```
pip install .
```

## Packets

A `Packet` has a `PacketType` and one payload of the matching kind
(`DialRequest`, `DialResponse`, `CloseRequest`, `CloseResponse`, `CloseDial`
or `Data`); a mismatched payload raises `TypeError`.

```python
from konnect.packet import PacketType, dial_request_packet, data_packet

req = dial_request_packet("tcp", "127.0.0.1:80", 111)
assert req.type is PacketType.DIAL_REQ
assert req.dial_request.address == "127.0.0.1:80"

chunk = data_packet(100, b"hello")
assert chunk.data.data == b"hello"
```

## Dialing through a tunnel

A `Tunnel` runs over any object with `send(packet)` and `recv()` (where
`recv` raises `EOFError` at the end of the stream), plus a transport object
with `close()`. `create_single_use_tunnel(open_stream, address, tunnel_ctx)`
calls `open_stream(address, tunnel_ctx)` to get that `(stream, transport)`
pair and starts `Tunnel.serve` on a background thread:

```python
from konnect.tunnel import DialFailure, create_single_use_tunnel, get_dial_failure_reason

tunnel = create_single_use_tunnel(open_stream, "proxy.example.com:8090")
try:
    conn = tunnel.dial("tcp", "10.0.0.5:443")
except DialFailure as exc:
    is_dial_failure, reason = get_dial_failure_reason(exc)
else:
    conn.write(b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n")
    reply = conn.read(4096)   # b"" means end of stream
    conn.close()
```

Points to know:

* A tunnel is single use. A second `dial` raises `DialFailure` with
  `DialFailureReason.ALREADY_STARTED`; a protocol other than `"tcp"` raises
  `ValueError`.
* `dial` accepts an optional `request_ctx` (`threading.Event`); setting it
  abandons the dial with `DialFailureReason.CONTEXT`. The wait is also bounded
  by `Tunnel.dial_timeout` (30 s by default, reason `TIMEOUT`).
* `Conn.close()` sends a close request, waits for the confirmation and then
  closes the tunnel. It raises `CloseTimeoutError` if none arrives within the
  close timeout (10 s), `TunnelClosedError` if the tunnel stopped first, and
  `ConnectionError` carrying the far side's message if it reported one. `Conn`
  is also a context manager.
* `tunnel.wait_done(timeout)` waits for the tunnel to stop serving;
  `tunnel.done` tells whether it has.

## Agent

`AgentClient` connects to one proxy server. Its `dialer` is a callable taking
the server address and returning a transport with `open_stream(metadata)`,
`close()` and `is_ready()`; the stream it opens has `send`, `recv` and
`header()`. The header must carry exactly one `serverID` and one
`serverCount` (see `server_id` and `server_count`). When
`service_account_token_path` is set, the file's contents are sent as an
`Authorization: Bearer <token>` metadata entry.

`ClientSet` keeps one `AgentClient` per proxy server instance:

```python
import threading
from konnect.clientset import ClientSetConfig

stop = threading.Event()
config = ClientSetConfig(address="proxy.example.com:8091", agent_id="agent-1", dialer=my_dialer)
client_set = config.new_agent_client_set(stop)
client_set.serve()        # background sync loop with exponential back-off
...
stop.set()                # stops syncing and closes every client
```

Endpoint connections are opened with `socket.create_connection` unless an
`endpoint_dialer(protocol, address, timeout)` is supplied.

## Metrics

```python
from konnect.metrics import Registry
from konnect.client_metrics import ClientMetrics

registry = Registry()
metrics = ClientMetrics()
metrics.register_metrics(registry)   # registers at most once
print(registry.gather())
```

`konnect.client_metrics.CLIENT_METRICS` is the instance tunnels use by
default and is not registered anywhere until you do so.
`konnect.agent_metrics.AGENT_METRICS` is registered in
`konnect.metrics.DEFAULT_REGISTRY` on import.

## Feature gates

```python
from konnect.features import DEFAULT_MUTABLE_FEATURE_GATE, NODE_TO_MASTER_TRAFFIC

DEFAULT_MUTABLE_FEATURE_GATE.enabled(NODE_TO_MASTER_TRAFFIC)   # False by default
DEFAULT_MUTABLE_FEATURE_GATE.set_from_map({NODE_TO_MASTER_TRAFFIC: True})
```

## What this package does not do

* It has no network transport of its own between the tunnel client or agent
  and a proxy server: you supply the stream and transport objects.
* It contains no proxy server, only the client and agent sides.
* It installs no command-line programs; everything is used as a library.

## Running the tests

```
pip install .[test]
pytest
```