# bmlb

`bmlb` hands out load-balancer IP addresses from configured pools and
announces them to routers over BGP with a small built-in BGP speaker.

## Contents

- `bmlb.allocator` – `Allocator`, `Pool`, `Port`, `Family` and
  `AllocationError`. The allocator owns a set of named pools and gives each
  service IPv4, IPv6 or dual-stack addresses. Services may share an address
  when they use the same sharing key and backend key and their ports do not
  collide. A pool with `avoid_buggy_ips=True` skips IPv4 addresses ending in
  `.0` or `.255`. Helpers: `pool_count`, `pool_for`,
  `ip_confuses_buggy_firmwares`.
- `bmlb.bgp` – the `Advertisement` dataclass (prefix, next hop, local
  preference, communities) and the abstract `Session` and `SessionManager`
  interfaces. A `Session` is also a context manager that closes itself.
- `bmlb.native.messages` – encoding and decoding of BGP messages:
  `send_open`, `read_open` (returns an `OpenResult`), `send_update`,
  `send_withdraw`, `send_keepalive`, `read_notification` (raises
  `BGPNotification`), `encode_prefixes` and `bytes_for_bits`. Writers accept
  any object with `write` or `sendall`; readers any object with `read` or
  `recv`.
- `bmlb.native.netutil` – `dial_md5` opens a TCP connection to a
  `"host:port"` peer, optionally from a given local source address and, on
  Linux, signed with a TCP MD5 password. Also `local_interfaces` (via
  `psutil`), `local_address_exists`, `get_router_id`, `hash_router_id` and
  `build_tcp_md5_sig`.
- `bmlb.native.session` – `NativeSessionManager` and `NativeSession`. A
  session runs in background threads: it connects, exchanges OPENs, sends
  keepalives at a third of the negotiated hold time, pushes updates and
  withdrawals when `set()` changes the advertisements, and reconnects with
  backoff after failures. Only IPv4 prefixes and next hops are accepted
  (`validate`); `sync_bfd_profiles` always raises `RuntimeError`.
- `bmlb.backoff` – `Backoff`, a multiplicative retry delay: 0, then 1 s,
  doubling up to 120 s, until `reset()`.
- `bmlb.metrics` – in-process labelled samples (`MetricVec`) grouped as
  `AllocatorStats` and `BGPStats`, with module-level instances
  `allocator_stats` and `bgp_stats`. `Allocator` reports to
  `allocator_stats` unless given its own; each `NativeSessionManager` makes
  its own `BGPStats` unless given one.

## Installing

```
pip install .
```

Python 3.10 or later is required. The only dependency is `psutil`.

## Allocating addresses

```python
import ipaddress
from bmlb.allocator import Allocator, Family, Pool, Port

allocator = Allocator()
allocator.set_pools({
    "default": Pool(
        cidrs=[ipaddress.ip_network("192.0.2.0/28"),
               ipaddress.ip_network("2001:db8::/124")],
        auto_assign=True,
    ),
})

ips = allocator.allocate("web", Family.DUAL_STACK, [Port("TCP", 80)], "", "")
print(ips, allocator.pool("web"), allocator.ips_of("web"))
allocator.unassign("web")
```

`assign` requests specific addresses instead; `allocate_from_pool` picks
from one named pool. Failed requests raise `AllocationError`, and
`set_pools` raises it when an existing allocation would no longer fit.

## Announcing a prefix

```python
import ipaddress
import logging
from bmlb.bgp import Advertisement
from bmlb.native.session import NativeSessionManager

manager = NativeSessionManager(logging.getLogger("bgp"))
password = ""  # empty: no TCP MD5 signing
session = manager.new_session(
    logging.getLogger("bgp"), "192.0.2.1:179", None, 64512,
    ipaddress.ip_address("192.0.2.10"), 64513, 90.0, 30.0,
    password, "node-1", "",
)
with session:
    session.set(Advertisement(prefix="198.51.100.0/24"))
    ...
```

## What it does not do

- There is no command-line program, daemon or controller: nothing watches a
  cluster for services, and the allocator and sessions are driven only by the
  code that imports them.
- There is no FRR integration. The `bmlb.frr` subpackage holds no modules;
  no router configuration files are written and no router output is parsed.
- Metrics are kept in memory only; nothing exports them.
- BFD is not supported.

## Running the tests

```
pip install .[test]
pytest
```