import pytest

from axionvera_node.state_trie import (
    BranchNode,
    ExtensionNode,
    LeafNode,
    StateTrie,
    StateTrieError,
    encode_node,
    hash_node,
)


def test_merkle_trie_root_integrity(tmp_path):
    with StateTrie(tmp_path / "db") as trie:
        initial_root = trie.root_hash()

        trie.insert(b"balance_user1", b"1000")
        root1 = trie.root_hash()
        assert initial_root != root1

        trie.insert(b"balance_user2", b"500")
        root2 = trie.root_hash()
        assert root1 != root2


def test_initial_root_is_zero(tmp_path):
    with StateTrie(tmp_path) as trie:
        assert trie.root_hash() == bytes(32)


def test_insert_returns_root(tmp_path):
    with StateTrie(tmp_path) as trie:
        returned = trie.insert(b"k", b"v")
        assert returned == trie.root_hash()
        assert len(returned) == 32


def test_reinserting_same_leaf_restores_root(tmp_path):
    with StateTrie(tmp_path) as trie:
        trie.insert(b"a", b"1")
        before = trie.root_hash()
        trie.insert(b"b", b"2")
        trie.insert(b"b", b"2")
        assert trie.root_hash() == before


def test_root_is_order_independent(tmp_path):
    with StateTrie(tmp_path / "one") as first, StateTrie(tmp_path / "two") as second:
        first.insert(b"a", b"1")
        first.insert(b"b", b"2")
        second.insert(b"b", b"2")
        second.insert(b"a", b"1")
        assert first.root_hash() == second.root_hash()


def test_get_returns_latest_value(tmp_path):
    with StateTrie(tmp_path) as trie:
        assert trie.get(b"balance_user1") is None
        trie.insert(b"balance_user1", b"1000")
        assert trie.get(b"balance_user1") == b"1000"
        trie.insert(b"balance_user1", b"500")
        assert trie.get(b"balance_user1") == b"500"


def test_state_persists_across_reopen(tmp_path):
    with StateTrie(tmp_path) as trie:
        root = trie.insert(b"key", b"value")
    with StateTrie(tmp_path) as reopened:
        assert reopened.root_hash() == root
        assert reopened.get(b"key") == b"value"


def test_snapshot_chunk_holds_encoded_nodes(tmp_path):
    with StateTrie(tmp_path) as trie:
        pairs = [(b"a", b"1"), (b"b", b"2"), (b"c", b"3")]
        for key, value in pairs:
            trie.insert(key, value)
        chunk = trie.get_snapshot_chunk(0)
        hashes = [node_hash for node_hash, _ in chunk]
        assert hashes == sorted(hashes)
        expected = {(hash_node(LeafNode(k, v)), encode_node(LeafNode(k, v))) for k, v in pairs}
        assert set(chunk) == expected
        assert trie.get_snapshot_chunk(1) == []


def test_snapshot_chunks_split_by_hundred(tmp_path):
    with StateTrie(tmp_path) as trie:
        for i in range(150):
            trie.insert(f"key{i}".encode(), b"v")
        first = trie.get_snapshot_chunk(0)
        second = trie.get_snapshot_chunk(1)
        assert len(first) == 100
        assert len(second) == 50
        assert first[-1][0] < second[0][0]


def test_negative_chunk_index_rejected(tmp_path):
    with StateTrie(tmp_path) as trie:
        with pytest.raises(ValueError):
            trie.get_snapshot_chunk(-1)


def test_closed_trie_raises(tmp_path):
    trie = StateTrie(tmp_path)
    trie.close()
    with pytest.raises(StateTrieError):
        trie.insert(b"k", b"v")


def test_open_on_file_path_fails(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(StateTrieError):
        StateTrie(blocker)


def test_leaf_encoding():
    assert encode_node(LeafNode(b"ab", b"c")) == b'{"Leaf":{"key":[97,98],"value":[99]}}'


def test_empty_branch_encoding():
    node = BranchNode((None,) * 16)
    expected = '{"Branch":{"children":[' + ",".join(["null"] * 16) + '],"value":null}}'
    assert encode_node(node) == expected.encode()


def test_extension_encoding_lists_child_bytes():
    node = ExtensionNode(b"\x01", bytes(32))
    expected = '{"Extension":{"prefix":[1],"child":[' + ",".join(["0"] * 32) + "]}}"
    assert encode_node(node) == expected.encode()


def test_hash_distinguishes_nodes():
    first = hash_node(LeafNode(b"a", b"1"))
    assert len(first) == 32
    assert first == hash_node(LeafNode(b"a", b"1"))
    assert first != hash_node(LeafNode(b"a", b"2"))


def test_node_validation():
    with pytest.raises(ValueError):
        BranchNode((None,) * 15)
    with pytest.raises(ValueError):
        ExtensionNode(b"", b"short")
    with pytest.raises(TypeError):
        encode_node("not a node")