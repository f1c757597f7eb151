"""
Test Key-Value Store Batch and Scan Operations
"""

import pytest

from sqlkv.common.errors import InvalidKeyError, TransactionError, ValueTooLargeError
from sqlkv.domain.kv_store import KeyValue, ScanOptions


@pytest.fixture
def users(store):
    """Store seeded with a handful of user and session keys"""
    for i in range(1, 6):
        store.set(f"user:{i}", f"name-{i}")
    store.set("session:a", b"s")
    return store


class TestGetMany:
    """get_many"""

    def test_input_order(self, store):
        """Test results follow the input order and skip missing keys"""
        store.set_many({"a": b"1", "b": b"2", "c": b"3"})
        result = store.get_many(["c", "missing", "a"])
        assert result == [KeyValue(key="c", value=b"3"), KeyValue(key="a", value=b"1")]

    def test_duplicates_returned_once(self, store):
        store.set("a", b"1")
        assert [kv.key for kv in store.get_many(["a", "a"])] == ["a"]

    def test_empty_input(self, store):
        assert store.get_many([]) == []

    def test_large_batch(self, store):
        """Test batches larger than one IN list"""
        keys = [f"k{i:04d}" for i in range(1200)]
        store.set_many([(key, key) for key in keys])
        result = store.get_many(keys)
        assert [kv.key for kv in result] == keys
        assert store.delete_many(keys) == 1200


class TestSetMany:
    """set_many"""

    def test_set_many_pairs(self, store):
        store.set_many([("a", b"1"), ("b", "2")])
        assert store.get("a") == b"1"
        assert store.get("b") == b"2"

    def test_set_many_with_ttl(self, store):
        store.set_many({"a": b"1", "b": b"2"}, ttl=60)
        assert store.ttl("a") is not None
        assert store.ttl("b") is not None

    def test_set_many_overwrites_and_clears_expiry(self, store):
        store.set_ex("a", b"old", 60)
        store.set_many({"a": b"new"})
        assert store.get("a") == b"new"
        assert store.ttl("a") is None

    def test_repeated_key_last_wins(self, store):
        store.set_many([("a", b"1"), ("a", b"2")])
        assert store.get("a") == b"2"

    def test_invalid_pair_writes_nothing(self, store):
        """Test validation failure of one pair leaves the store untouched"""
        with pytest.raises(InvalidKeyError):
            store.set_many([("a", b"1"), ("", b"2")])
        assert store.get("a") is None

    def test_oversized_value_writes_nothing(self, make_store):
        store = make_store(KV_MAX_VALUE_SIZE=4)
        with pytest.raises(ValueTooLargeError):
            store.set_many({"a": b"1", "b": b"too large"})
        assert store.get("a") is None

    def test_empty_input(self, store):
        store.set_many({})
        assert store.count() == 0


class TestDeleteMany:
    """delete_many"""

    def test_delete_many(self, store):
        store.set_many({"a": b"1", "b": b"2", "c": b"3"})
        assert store.delete_many(["a", "b", "missing"]) == 2
        assert store.keys() == ["c"]

    def test_empty_input(self, store):
        assert store.delete_many([]) == 0


class TestScan:
    """keys / scan / count / delete_prefix"""

    def test_keys_ordered(self, users):
        assert users.keys() == [
            "session:a",
            "user:1",
            "user:2",
            "user:3",
            "user:4",
            "user:5",
        ]

    def test_prefix(self, users):
        assert users.keys(ScanOptions(prefix="user:")) == [f"user:{i}" for i in range(1, 6)]
        assert users.count(ScanOptions(prefix="user:")) == 5
        assert users.count(ScanOptions(prefix="nothing:")) == 0

    def test_pagination(self, users):
        """Test limit and offset paginate in key order"""
        page = users.scan(ScanOptions(prefix="user:", limit=2, offset=1))
        assert page == [
            KeyValue(key="user:2", value=b"name-2"),
            KeyValue(key="user:3", value=b"name-3"),
        ]
        assert users.keys(ScanOptions(prefix="user:", offset=4)) == ["user:5"]
        assert users.keys(ScanOptions(limit=0)) == []

    def test_count_ignores_pagination(self, users):
        assert users.count(ScanOptions(prefix="user:", limit=1, offset=3)) == 5

    def test_wildcards_are_literal(self, store):
        """Test LIKE wildcards in a prefix match themselves only"""
        store.set_many({"a%b1": b"", "axb2": b"", "a_c": b"", "abc": b"", "a/d": b""})
        assert store.keys(ScanOptions(prefix="a%")) == ["a%b1"]
        assert store.keys(ScanOptions(prefix="a_")) == ["a_c"]
        assert store.keys(ScanOptions(prefix="a/")) == ["a/d"]
        assert store.delete_prefix("a_") == 1
        assert store.count() == 4

    def test_prefix_is_case_sensitive(self, store):
        store.set_many({"User:1": b"", "user:1": b""})
        assert store.keys(ScanOptions(prefix="user:")) == ["user:1"]
        assert store.keys(ScanOptions(prefix="User:")) == ["User:1"]

    def test_expired_keys_excluded(self, store, backdate, raw_keys):
        """Test on_read scans skip expired keys unless asked for them"""
        store.set_ex("user:1", b"gone", 60)
        store.set("user:2", b"here")
        backdate(store, "user:1")

        included = store.keys(ScanOptions(prefix="user:", include_expired=True))
        assert included == ["user:1", "user:2"]

        assert store.keys(ScanOptions(prefix="user:")) == ["user:2"]
        assert store.count(ScanOptions(prefix="user:")) == 1
        assert raw_keys(store) == ["user:2"]

    def test_delete_prefix(self, users):
        assert users.delete_prefix("user:") == 5
        assert users.keys() == ["session:a"]

    def test_delete_empty_prefix(self, users):
        """Test an empty prefix matches every key"""
        assert users.delete_prefix("") == 6
        assert users.count() == 0


class TestMaintenance:
    """clear / truncate / stats / vacuum / analyze"""

    def test_clear(self, users):
        assert users.clear() == 6
        assert users.count() == 0

    def test_stats(self, manual_store, backdate):
        manual_store.set("a", b"1")
        manual_store.set("b", b"12345")
        manual_store.set_ex("c", b"123", 60)
        backdate(manual_store, "c")

        stats = manual_store.stats()
        assert stats.total_keys == 3
        assert stats.expired_keys == 1
        assert stats.total_value_bytes == 9
        assert stats.max_value_bytes == 5
        assert stats.avg_value_bytes == pytest.approx(3.0)

    def test_stats_empty(self, store):
        stats = store.stats()
        assert stats.total_keys == 0
        assert stats.expired_keys == 0
        assert stats.avg_value_bytes == 0
        assert stats.table_size_bytes is None
        assert stats.index_size_bytes is None

    def test_truncate(self, users):
        users.truncate()
        assert users.count() == 0
        users.set("a", b"1")
        assert users.keys() == ["a"]

    def test_truncate_rolls_back_with_transaction(self, users):
        with pytest.raises(RuntimeError):
            with users.atomic() as tx:
                tx.truncate()
                raise RuntimeError("abort")
        assert users.count() == 6

    def test_vacuum_and_analyze(self, users):
        """Test space reclamation and planner statistics run outside any transaction"""
        users.delete_prefix("user:")
        users.vacuum()
        users.analyze()
        assert users.keys() == ["session:a"]
        users.set("user:9", b"back")
        assert users.get("user:9") == b"back"

    def test_vacuum_inside_transaction(self, store):
        with pytest.raises(TransactionError):
            with store.atomic():
                store.vacuum()
        with pytest.raises(TransactionError):
            with store.atomic():
                store.analyze()
