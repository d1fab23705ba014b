# nfsproxy

A TCP proxy for ONC RPC traffic aimed at NFSv3 servers. It sits between
NFS clients and one backend server and forwards every RPC record
unchanged. It can also hold back replies or drop connections according to
a JSON policy, set per NFS procedure and per client address. It records
metrics in the Prometheus text format. It also includes a small
rpcbind/portmap responder and client, so that clients can discover the
proxy's ports.

The package needs only the Python standard library and Python 3.10 or
newer.

## Modules

- `nfsproxy.record`: ONC RPC record marking over binary streams.
  - `read_record(reader)` joins fragments into one payload. It raises
    `EOFError` when the stream ends cleanly before a record starts, and
    `ValueError` when the stream ends in the middle of a record.
  - `write_record(writer, payload)` writes the payload as one final
    fragment.
- `nfsproxy.header`: call and reply header parsing.
  - `CallHeader`, `ReplyHeader`, `parse_call_header` and
    `parse_reply_header` parse the headers. Parsing raises `HeaderError`.
  - `proc_name`, `mount_proc_name`, `portmap_proc_name` and
    `proc_name_for` give procedure names for NFSv3, MOUNT and portmap.
- `nfsproxy.policy`: the fault-injection policy, with `Manager`, `Action`
  and `PolicyError`.
- `nfsproxy.metrics`: metric collectors.
  - `Counter`, `Histogram`, `CounterVec` and `HistogramVec` are thread-safe
    collectors; the two `...Vec` classes take labels.
  - `Registry` renders every registered collector in the text exposition
    format with `exposition()`.
  - `new_metric_set(registry)` creates the proxy's metrics (a `MetricSet`)
    and registers them.
- `nfsproxy.proxy`:
  - `ProxyServer` is the forwarding proxy.
  - `parse_rpc_reply_summary(payload, program)` decodes reply status fields
    into a `ReplySummary`.
- `nfsproxy.rpcbind_server`:
  - `RpcbindServer` answers these calls for the configured ports:
    - portmap v2 NULL, GETPORT (TCP only) and DUMP;
    - rpcbind v3/v4 NULL and GETADDR/GETVERSADDR (netids `tcp` and `tcp6`).
  - It also provides the XDR helpers `XdrDecoder`, `pack_u32`,
    `pack_string`, `accepted_reply` and `universal_addr`.
- `nfsproxy.rpcbind_client`: calls to an rpcbind service.
  - `query_port`, `register_tcp_mapping` and `register_rpcb_mapping_v4`
    make the calls.
  - The call builders and reply parsers are available on their own.
  - `local_rpcbind_host` and `local_rpcbind_available` probe for a local
    rpcbind service.
  - Bad replies raise `RpcbindError`.

## Policy format

A policy is a JSON object with up to two sections, `__rpc_delay__` and
`__rpc_drop__`. Each section maps an NFS procedure name to client rules.
Each client rule maps a delay in milliseconds to a relative weight. The
client `default` applies to every address that has no rule of its own.

```json
{
  "__rpc_delay__": {
    "READ": {"default": {"0": 9, "1000": 1}}
  },
  "__rpc_drop__": {
    "READDIRPLUS": {"192.0.2.10": {"10000": 1}}
  }
}
```

With this policy:

- About one READ reply in ten is held back for a second.
- Every READDIRPLUS reply to 192.0.2.10 is held for ten seconds, and then
  the connection is closed instead of the reply being delivered.

When both sections match a call, the drop rule decides the delay.

```python
import random

from nfsproxy.policy import Manager

manager = Manager(random.Random())
manager.load_file("policy.json")

action = manager.action_for("READDIRPLUS", "192.0.2.10")
print(action.delay_ms, action.drop)

manager.set_rule("delay", "WRITE", "default", {250: 1})
manager.delete_rule("drop", "READDIRPLUS", "192.0.2.10")
print(manager.to_json())
```

Rule types are named as follows:

- delay rules: `__rpc_delay__`, `delay` or `rpc_delay`;
- drop rules: `__rpc_drop__`, `drop` or `rpc_drop`.

`delete_rule` with an empty client removes every rule of that procedure.
Invalid input raises `PolicyError`. `snapshot()` returns a copy of the
current rules.

## Running the proxy

The caller opens the listening sockets. `serve` accepts connections and
handles each one on its own thread until `accept` raises. The backend
address is given as `host:port`, or `[v6addr]:port` for IPv6.

```python
import logging
import random
import socket
import threading

from nfsproxy.metrics import Registry, new_metric_set
from nfsproxy.policy import Manager
from nfsproxy.proxy import ProxyServer
from nfsproxy.rpcbind_server import RpcbindServer

logging.basicConfig(level=logging.INFO)

manager = Manager(random.Random())
manager.load_file("policy.json")
registry = Registry()
metrics = new_metric_set(registry)

proxy = ProxyServer("192.0.2.20:2049", policy=manager, metrics=metrics, verbose=True)
rpcbind = RpcbindServer(host4="192.0.2.1", nfs_port=2049, mount_port=20048)

threading.Thread(
    target=rpcbind.serve, args=(socket.create_server(("0.0.0.0", 111)),), daemon=True
).start()
proxy.serve(socket.create_server(("0.0.0.0", 2049)))
```

Some options of `ProxyServer` change how it connects to the backend:

- With `secure_source_port=True`, it connects from a reserved local port.
  It tries `source_port_min` through `source_port_max` in turn, which
  default to 665 and 1023.
- `sleep` and `clock` can be replaced, for example in tests.

With `verbose=True`, calls, replies and injected faults are logged at
INFO level. `registry.exposition()` returns the current metrics as text.

## RPC helpers

```python
import io

from nfsproxy.record import read_record, write_record
from nfsproxy.rpcbind_server import universal_addr

stream = io.BytesIO()
write_record(stream, b"\x00\x00\x00\x01")
stream.seek(0)
assert read_record(stream) == b"\x00\x00\x00\x01"

print(universal_addr("192.0.2.1", 2049))  # 192.0.2.1.8.1
```

## What it does not do

- The package has no command-line program. Listeners, policy loading and
  wiring are left to the calling code, as shown above.
- Metrics are only rendered as text. There is no HTTP endpoint to serve
  them.
- There is no interface for editing the policy at run time other than the
  `Manager` methods.
- The rpcbind responder does not accept registrations. It only reports the
  ports it was configured with.

## Tests

The test suite uses pytest. Install the package with its `test` extra,
then run `pytest` from the project directory.