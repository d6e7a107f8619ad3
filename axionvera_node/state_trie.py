"""Persistent store of hashed state nodes with a running root hash."""

from __future__ import annotations

import hashlib
import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

HASH_SIZE = 32
BRANCH_WIDTH = 16
CHUNK_SIZE = 100
_DB_FILE = "state.sqlite3"


class StateTrieError(Exception):
    """Raised when the state store cannot be opened, read or written."""


def _check_hash(name: str, value: bytes) -> bytes:
    value = bytes(value)
    if len(value) != HASH_SIZE:
        raise ValueError(f"{name} must be {HASH_SIZE} bytes, got {len(value)}")
    return value


@dataclass(frozen=True)
class LeafNode:
    key: bytes
    value: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "key", bytes(self.key))
        object.__setattr__(self, "value", bytes(self.value))


@dataclass(frozen=True)
class BranchNode:
    children: tuple[Optional[bytes], ...]
    value: Optional[bytes] = None

    def __post_init__(self) -> None:
        children = tuple(None if c is None else _check_hash("child", c) for c in self.children)
        if len(children) != BRANCH_WIDTH:
            raise ValueError(f"a branch has {BRANCH_WIDTH} children, got {len(children)}")
        object.__setattr__(self, "children", children)
        if self.value is not None:
            object.__setattr__(self, "value", bytes(self.value))


@dataclass(frozen=True)
class ExtensionNode:
    prefix: bytes
    child: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "prefix", bytes(self.prefix))
        object.__setattr__(self, "child", _check_hash("child", self.child))


TrieNode = Union[LeafNode, BranchNode, ExtensionNode]


def _optional_bytes(data: Optional[bytes]) -> Optional[list[int]]:
    return None if data is None else list(data)


def _to_json(node: TrieNode) -> dict[str, Any]:
    if isinstance(node, LeafNode):
        return {"Leaf": {"key": list(node.key), "value": list(node.value)}}
    if isinstance(node, BranchNode):
        return {
            "Branch": {
                "children": [_optional_bytes(child) for child in node.children],
                "value": _optional_bytes(node.value),
            }
        }
    if isinstance(node, ExtensionNode):
        return {"Extension": {"prefix": list(node.prefix), "child": list(node.child)}}
    raise TypeError(f"not a trie node: {node!r}")


def _from_json(document: dict[str, Any]) -> TrieNode:
    ((kind, body),) = document.items()
    if kind == "Leaf":
        return LeafNode(bytes(body["key"]), bytes(body["value"]))
    if kind == "Branch":
        children = tuple(None if c is None else bytes(c) for c in body["children"])
        value = None if body["value"] is None else bytes(body["value"])
        return BranchNode(children, value)
    if kind == "Extension":
        return ExtensionNode(bytes(body["prefix"]), bytes(body["child"]))
    raise ValueError(f"unknown node kind {kind!r}")


def encode_node(node: TrieNode) -> bytes:
    """Compact JSON encoding of a node, byte strings written as integer arrays."""
    return json.dumps(_to_json(node), separators=(",", ":")).encode("ascii")


def hash_node(node: TrieNode) -> bytes:
    """SHA-256 of the node's encoding."""
    return hashlib.sha256(encode_node(node)).digest()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (hash BLOB PRIMARY KEY, data BLOB NOT NULL) WITHOUT ROWID;
CREATE TABLE IF NOT EXISTS leaves (key BLOB PRIMARY KEY, hash BLOB NOT NULL) WITHOUT ROWID;
CREATE TABLE IF NOT EXISTS meta (name TEXT PRIMARY KEY, value BLOB NOT NULL);
"""


class StateTrie:
    """Global state: leaves stored by hash, root the XOR of every inserted leaf hash."""

    def __init__(self, path: Union[str, Path]) -> None:
        directory = Path(path)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(directory / _DB_FILE)
            with self._conn:
                self._conn.executescript(_SCHEMA)
            row = self._conn.execute("SELECT value FROM meta WHERE name = 'root'").fetchone()
        except (OSError, sqlite3.Error) as exc:
            raise StateTrieError(str(exc)) from exc
        self._root = bytes(row[0]) if row else bytes(HASH_SIZE)

    def insert(self, key: bytes, value: bytes) -> bytes:
        """Store a key-value leaf and return the new root hash."""
        node = LeafNode(key, value)
        encoded = encode_node(node)
        node_hash = hashlib.sha256(encoded).digest()
        new_root = bytes(a ^ b for a, b in zip(self._root, node_hash))
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO nodes (hash, data) VALUES (?, ?)", (node_hash, encoded)
                )
                self._conn.execute(
                    "INSERT OR REPLACE INTO leaves (key, hash) VALUES (?, ?)", (node.key, node_hash)
                )
                self._conn.execute(
                    "INSERT OR REPLACE INTO meta (name, value) VALUES ('root', ?)", (new_root,)
                )
        except sqlite3.Error as exc:
            raise StateTrieError(str(exc)) from exc
        self._root = new_root
        return new_root

    def get(self, key: bytes) -> Optional[bytes]:
        """The value last inserted under ``key``, or None."""
        try:
            row = self._conn.execute(
                "SELECT nodes.data FROM leaves JOIN nodes ON nodes.hash = leaves.hash "
                "WHERE leaves.key = ?",
                (bytes(key),),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StateTrieError(str(exc)) from exc
        if row is None:
            return None
        node = _from_json(json.loads(row[0]))
        return node.value if isinstance(node, LeafNode) else None

    def root_hash(self) -> bytes:
        return self._root

    def get_snapshot_chunk(self, chunk_index: int) -> list[tuple[bytes, bytes]]:
        """Up to 100 (node hash, encoded node) pairs, in hash order, for syncing."""
        if chunk_index < 0:
            raise ValueError("chunk_index must not be negative")
        try:
            rows = self._conn.execute(
                "SELECT hash, data FROM nodes ORDER BY hash LIMIT ? OFFSET ?",
                (CHUNK_SIZE, chunk_index * CHUNK_SIZE),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StateTrieError(str(exc)) from exc
        return [(bytes(node_hash), bytes(data)) for node_hash, data in rows]

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> StateTrie:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()