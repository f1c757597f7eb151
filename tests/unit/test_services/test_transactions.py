"""
Transaction Wrapper Unit Tests
"""

import pytest

from sqlkv.common.errors import InvalidKeyError, NestedTransactionError, TransactionError
from sqlkv.store import KVTransaction, _KVOperations


class TestTransaction:
    """transaction(body)"""

    def test_commit(self, store):
        """Test every operation of the body is committed together"""

        def body(tx):
            tx.set("a", b"1")
            tx.set("b", b"2")
            return tx.increment("counter")

        assert store.transaction(body) == 1
        assert store.get("a") == b"1"
        assert store.get("b") == b"2"
        assert store.get("counter") == b"1"

    def test_rollback_on_error(self, store):
        """Test an exception in the body rolls back every statement"""
        store.set("a", b"original")

        def body(tx):
            tx.set("a", b"changed")
            tx.set("b", b"new")
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError, match="abort"):
            store.transaction(body)

        assert store.get("a") == b"original"
        assert store.get("b") is None

    def test_rollback_on_store_error(self, store):
        def body(tx):
            tx.set("a", b"1")
            tx.set("", b"2")

        with pytest.raises(InvalidKeyError):
            store.transaction(body)
        assert store.get("a") is None

    def test_reads_own_writes(self, store):
        def body(tx):
            tx.set("k", b"v")
            assert tx.get("k") == b"v"
            assert tx.compare_and_swap("k", b"v", b"w").is_success
            return tx.get("k")

        assert store.transaction(body) == b"w"

    def test_handle_type(self, store):
        assert isinstance(store.transaction(lambda tx: tx), KVTransaction)

    def test_operation_surface_requires_unit(self):
        """Test the shared operation surface cannot be used without a unit of work"""
        with pytest.raises(TypeError):
            _KVOperations()


class TestAtomic:
    """atomic() context manager"""

    def test_commit(self, store):
        with store.atomic() as tx:
            tx.set_many({"a": b"1", "b": b"2"})
            tx.delete("a")
        assert store.keys() == ["b"]

    def test_rollback(self, store):
        with pytest.raises(ValueError):
            with store.atomic() as tx:
                tx.set("a", b"1")
                raise ValueError("boom")
        assert store.get("a") is None

    def test_store_calls_join_active_transaction(self, store):
        """Test store operations inside a transaction are part of it"""
        with pytest.raises(RuntimeError):
            with store.atomic():
                store.set("a", b"1")
                assert store.in_transaction
                raise RuntimeError("abort")
        assert store.get("a") is None
        assert not store.in_transaction


class TestTransactionMisuse:
    """Nesting and stale handles"""

    def test_nested_atomic(self, store):
        """Test starting a transaction inside a body fails and rolls back the outer one"""
        with pytest.raises(NestedTransactionError):
            with store.atomic() as tx:
                tx.set("a", b"1")
                with store.atomic():
                    pass
        assert store.get("a") is None

    def test_nested_through_handle(self, store):
        def body(tx):
            return tx.transaction(lambda inner: None)

        with pytest.raises(NestedTransactionError):
            store.transaction(body)

        with pytest.raises(NestedTransactionError):
            with store.atomic() as tx:
                tx.atomic()

    def test_handle_after_commit(self, store):
        """Test a handle cannot be used once its transaction ended"""
        tx = store.transaction(lambda tx: tx)
        assert not tx.active
        with pytest.raises(TransactionError) as exc_info:
            tx.get("a")
        assert exc_info.value.code == "transaction_closed"

    def test_handle_after_rollback(self, store):
        captured = []
        with pytest.raises(RuntimeError):
            with store.atomic() as tx:
                captured.append(tx)
                raise RuntimeError("abort")
        with pytest.raises(TransactionError):
            captured[0].set("a", b"1")

    def test_store_usable_after_failed_transaction(self, store):
        def body(tx):
            tx.set("a", b"0")
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            store.transaction(body)
        store.set("a", b"1")
        assert store.get("a") == b"1"
