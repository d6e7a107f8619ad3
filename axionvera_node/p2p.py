"""Peer bookkeeping: a Kademlia routing table and a manager of live peer sessions."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

logger = logging.getLogger(__name__)

NODE_ID_SIZE = 32
BUCKET_COUNT = 256
BUCKET_SIZE = 20
DEFAULT_MAINTENANCE_INTERVAL = 30.0
MOCK_LATENCY_MS = 50
PROTOCOL_VERSION = "1.0.0"

Address = tuple[str, int]


class P2PError(Exception):
    """Raised when a peer operation cannot be carried out."""


def _check_node_id(name: str, value: bytes) -> bytes:
    value = bytes(value)
    if len(value) != NODE_ID_SIZE:
        raise ValueError(f"{name} must be {NODE_ID_SIZE} bytes, got {len(value)}")
    return value


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PeerInfo:
    id: str
    address: Address
    is_connected: bool = False
    last_seen: datetime = field(default_factory=_utc_now)
    latency_ms: int = 0
    version: str = PROTOCOL_VERSION


@dataclass(frozen=True)
class BroadcastResult:
    recipients_count: int
    failed_peers: list[str]


def xor_distance(id1: bytes, id2: bytes) -> bytes:
    """Byte-wise XOR of two node ids; compares as the Kademlia distance."""
    id1 = _check_node_id("id1", id1)
    id2 = _check_node_id("id2", id2)
    return bytes(a ^ b for a, b in zip(id1, id2))


class KademliaRoutingTable:
    """256 k-buckets of at most 20 peers each, keyed by node id."""

    def __init__(self, local_id: bytes) -> None:
        self.local_id = _check_node_id("local_id", local_id)
        self._buckets: list[dict[bytes, PeerInfo]] = [{} for _ in range(BUCKET_COUNT)]

    def bucket_index(self, node_id: bytes) -> int:
        """Bucket for ``node_id``: the position of the first differing bit, 255 if equal."""
        distance = xor_distance(self.local_id, node_id)
        for byte_index, byte in enumerate(distance):
            if byte:
                return byte_index * 8 + (8 - byte.bit_length())
        return BUCKET_COUNT - 1

    def update(self, node_id: bytes, peer: PeerInfo) -> bool:
        """Store ``peer`` under ``node_id``; false when its bucket is already full."""
        node_id = _check_node_id("node_id", node_id)
        index = self.bucket_index(node_id)
        bucket = self._buckets[index]
        if len(bucket) >= BUCKET_SIZE:
            logger.debug("Bucket %d is full, ignoring new peer", index)
            return False
        bucket[node_id] = peer
        return True

    def _entries(self) -> Iterable[tuple[bytes, PeerInfo]]:
        for bucket in self._buckets:
            yield from sorted(bucket.items())

    def find_closest(self, target: bytes, k: int) -> list[PeerInfo]:
        """The ``k`` peers nearest ``target`` by XOR distance, nearest first."""
        target = _check_node_id("target", target)
        if k < 0:
            raise ValueError("k must not be negative")
        ranked = sorted(self._entries(), key=lambda entry: xor_distance(entry[0], target))
        return [peer for _, peer in ranked[:k]]

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._buckets)


class P2PManager:
    """Tracks connected peers and the routing table of the local node."""

    def __init__(self, local_id: bytes) -> None:
        self.local_id = _check_node_id("local_id", local_id)
        self.routing_table = KademliaRoutingTable(self.local_id)
        self._peers: dict[str, PeerInfo] = {}
        self._lock = asyncio.Lock()
        self._maintenance: Optional[asyncio.Task[None]] = None

    @property
    def _node_hex(self) -> str:
        return self.local_id.hex()

    @property
    def maintenance_running(self) -> bool:
        return self._maintenance is not None and not self._maintenance.done()

    async def _maintain(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            logger.info(
                "Performing Kademlia maintenance for node %s at %s: pinging peers...",
                self._node_hex,
                _utc_now().isoformat(),
            )

    def start_maintenance(self, interval: float = DEFAULT_MAINTENANCE_INTERVAL) -> None:
        """Run routing-table maintenance in the background every ``interval`` seconds."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        if self.maintenance_running:
            return
        self._maintenance = asyncio.get_running_loop().create_task(self._maintain(interval))

    async def stop_maintenance(self) -> None:
        """Cancel the background maintenance task, if any, and wait for it."""
        task, self._maintenance = self._maintenance, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def bootstrap(self, seed_address: Address) -> None:
        """Join the network through a single seed peer."""
        logger.info("Node %s bootstrapping from seed peer %s:%s", self._node_hex, *seed_address)

    def handle_ping(self, peer: PeerInfo) -> None:
        """Answer a PING from ``peer``."""
        logger.debug("Node %s received PING from %s at %s", self._node_hex, peer.id, peer.address)

    async def connect_to_peer(self, address: Address, peer_id: str) -> str:
        """Record a connection to ``peer_id`` and return a new session id."""
        logger.info("Connecting to peer %s at %s:%s", peer_id, *address)
        peer = PeerInfo(
            id=peer_id,
            address=address,
            is_connected=True,
            last_seen=_utc_now(),
            latency_ms=MOCK_LATENCY_MS,
            version=PROTOCOL_VERSION,
        )
        async with self._lock:
            self._peers[peer_id] = peer
        session_id = f"session_{random.getrandbits(64)}"
        logger.info("Successfully connected to peer %s, session: %s", peer_id, session_id)
        return session_id

    async def disconnect_from_peer(self, peer_id: str) -> None:
        """Forget ``peer_id``; raises P2PError when it was not connected."""
        logger.info("Disconnecting from peer: %s", peer_id)
        async with self._lock:
            if self._peers.pop(peer_id, None) is None:
                logger.warning("Peer %s was not connected", peer_id)
                raise P2PError("Peer not connected")
        logger.info("Successfully disconnected from peer: %s", peer_id)

    async def peer_list(self) -> list[PeerInfo]:
        async with self._lock:
            return list(self._peers.values())

    async def connected_peers_count(self) -> int:
        async with self._lock:
            return len(self._peers)

    async def broadcast_message(
        self,
        message_type: int,
        payload: bytes,
        target_peers: Sequence[str] = (),
        ttl: int = 300,
    ) -> BroadcastResult:
        """Send to ``target_peers``, or to every connected peer when none are named."""
        logger.info(
            "Broadcasting message type %d (%d bytes, ttl %d) to %d peers",
            message_type,
            len(payload),
            ttl,
            len(target_peers),
        )
        async with self._lock:
            if not target_peers:
                recipients = len(self._peers)
                failed: list[str] = []
            else:
                recipients = sum(1 for peer_id in target_peers if peer_id in self._peers)
                failed = [peer_id for peer_id in target_peers if peer_id not in self._peers]
        logger.info("Message broadcasted to %d recipients", recipients)
        if failed:
            logger.warning("Failed to broadcast to %d peers: %s", len(failed), failed)
        return BroadcastResult(recipients, failed)