# axionvera-node

Components for a node on a peer-to-peer network, usable on their own or
together from asyncio code.

## What is inside

| Module | Provides |
| --- | --- |
| `axionvera_node.metrics` | `MetricsCollector`: request, error, connection and byte counters with a Prometheus text export |
| `axionvera_node.rate_limiter` | `RateLimiter`, `InMemoryBackend`, `RedisBackend`: per-key limits over one-minute windows |
| `axionvera_node.state_trie` | `StateTrie`: a SQLite-backed store of hashed state nodes with a running root hash and snapshot chunks |
| `axionvera_node.p2p` | `KademliaRoutingTable`, `P2PManager`, `xor_distance`: XOR-distance routing, peer sessions and broadcasts |
| `axionvera_node.shutdown` | `ShutdownHandler`, `ShutdownSignal`, `ShutdownInfo`: signal-driven shutdown with a grace period |
| `axionvera_node.profiling` | `PerformanceProfiler`, `benchmark_operation`, `benchmark_p2p_broadcast`, `compare_performance`, `get_cpu_metrics` |
| `axionvera_node.signing` | `SigningService`, `LocalSigner`, `HsmSigner`, `PublicKeyCache`, `verify_signature`, `create_signer` |

## Metrics

```python
from axionvera_node.metrics import MetricsCollector

metrics = MetricsCollector()
metrics.increment_requests()
metrics.set_active_connections(5)
metrics.add_bytes_sent(512)

print(metrics.total_requests, metrics.active_connections)
print(metrics.prometheus_metrics())
```

The counters are properties and are safe to update from several threads.
Negative counts raise `ValueError`. `prometheus_metrics()` reports uptime,
the counters and the process's resident memory (read from
`/proc/self/statm`, `0` where that is not available). Durations passed to
`record_request_duration` are kept in `request_durations`; the export carries
only the histogram's header, not its buckets.

## Rate limiting

`RateLimiter.create` connects to Redis when a URL is given and answers a
ping, and falls back to an in-memory counter otherwise. Counts are kept per
key in one-minute buckets (`current_bucket()` is the minute since the Unix
epoch); Redis keys are `rate:<key>:<bucket>` and expire after 70 seconds.

```python
from axionvera_node.rate_limiter import RateLimiter

limiter = await RateLimiter.create(None, 3)
allowed = await limiter.allow("1.2.3.4")
```

A failing Redis backend raises `RateLimiterError`.

## State store

```python
from axionvera_node.state_trie import StateTrie

with StateTrie("state-dir") as trie:
    root = trie.insert(b"balance_user1", b"1000")
    assert trie.get(b"balance_user1") == b"1000"
    chunk = trie.get_snapshot_chunk(0)
```

Each insert stores a `LeafNode` under the SHA-256 of its JSON encoding
(`encode_node`, `hash_node`) in `state.sqlite3` inside the given directory.
The root hash starts as 32 zero bytes and is the XOR of every inserted leaf
hash; it persists across reopening. `get_snapshot_chunk(n)` returns up to 100
`(hash, encoded node)` pairs in hash order. Errors from the database raise
`StateTrieError`.

## Peers

```python
from axionvera_node.p2p import P2PManager

manager = P2PManager(bytes(32))
session = await manager.connect_to_peer(("127.0.0.1", 9000), "peer-a")
result = await manager.broadcast_message(1, b"hello", [], 300)
print(result.recipients_count, result.failed_peers)
```

An empty list of target peers counts every connected peer as a recipient;
named peers that are not connected are reported in `failed_peers`.
`disconnect_from_peer` raises `P2PError` for a peer that is not connected.
`start_maintenance(interval)` runs a background task that logs a maintenance
pass every `interval` seconds until `stop_maintenance()` is awaited.

`KademliaRoutingTable` holds 256 buckets of at most 20 peers each;
`update(node_id, peer)` returns `False` when the bucket is full, and
`find_closest(target, k)` returns the `k` nearest peers by XOR distance.
Node ids are 32 bytes.

## Graceful shutdown

```python
from axionvera_node.shutdown import ShutdownHandler, ShutdownSignal

handler = ShutdownHandler(10.0)
signals = await handler.start()      # listens for SIGTERM, SIGINT, SIGQUIT
await handler.trigger_shutdown(ShutdownSignal.MANUAL)

assert await signals.get() is ShutdownSignal.MANUAL
remaining = handler.remaining_grace_period()
```

Only the first shutdown request is recorded and sent to subscribers; later
ones are ignored. `trigger_shutdown` raises `ShutdownError` when nobody has
subscribed. `shutdown_info()` returns a `ShutdownInfo` with the start time,
the signal and the grace period; remaining time never drops below zero.

## Profiling

```python
from axionvera_node.profiling import PerformanceProfiler, benchmark_operation

profiler = PerformanceProfiler()
profiler.start_operation("load")
result = profiler.end_operation("load", success_count=10, error_count=1)

outcome, run = await benchmark_operation(profiler, "batch", lambda: 5)
summary = profiler.performance_summary()
```

Throughput is successes per second of measured time (0 when no time was
measured). Ending an operation that was never started raises
`ProfilingError`. `compare_performance(before, after)` gives the relative
throughput change and the absolute error-rate change, and its `summary()`
renders them as one line. `benchmark_p2p_broadcast` times broadcasts through
a `P2PManager`, counting a broadcast that reached nobody as an error.
`get_cpu_metrics()` reads this process's CPU times and memory.

## Signing

```python
from axionvera_node.signing import LocalSigner, SigningService, verify_signature

service = SigningService(60)
signer = await LocalSigner.create("node_key.pem")
await service.add_signer("node", signer)

signature = await service.sign_with("node", b"message")
public_key = await service.get_public_key("node")
assert verify_signature(public_key, b"message", signature)
```

The first signer added becomes the default used by `sign`; only signers whose
health check passes can be added. Public keys are cached per signer for the
configured number of seconds; `invalidate_cache` drops one entry and
`get_cache_stats` reports how many are held and how many have expired.
Missing signers raise `SigningError`.

Signer configurations are `LocalSignerConfig` and `HsmSignerConfig`, turned
into signers by `create_signer` and to and from JSON by `config_to_json` and
`config_from_json`.

## What this package does not do

- It has no command and runs no server: there is no HTTP or gRPC endpoint,
  no node process to start, and no logging or tracing setup.
- `LocalSigner.create` does not read a key file; it generates a new Ed25519
  key pair and uses the path only in its key id (`local:<path>`).
- `HsmSigner` talks to no hardware: its health check is `False` and key
  operations raise `SignerNotImplementedError`. There is no cloud key
  service signer.
- The state store is not a full Merkle Patricia trie: it keeps leaves by
  hash and combines their hashes by XOR; branch and extension nodes can be
  encoded and hashed but are not built by inserts.
- The peer manager sends nothing over the network: connections, pings,
  bootstrapping and broadcasts only update and report its own bookkeeping.

## Running the tests

Install the `test` extra, then run `pytest` from the project directory.