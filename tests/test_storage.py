"""
Test suite for storage backends

Runs the same transactional contract against the in-memory and SQLite
backends: nested atomic units, rollback, after-commit callbacks and the
conditional write primitives.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from peerfund.models import Loan, LoanStatus, record_stamp
from peerfund.storage import InMemoryStorage, SQLiteStorage, create_storage


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    backend = InMemoryStorage() if request.param == "memory" else SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestBasicOperations:
    """Test CRUD operations"""

    def test_save_and_load(self, storage):
        storage.save("items", "a", {"id": "a", "value": 1})
        assert storage.load("items", "a") == {"id": "a", "value": 1}
        assert storage.exists("items", "a")
        assert storage.load("items", "missing") is None

    def test_find_and_count(self, storage):
        storage.save("items", "a", {"id": "a", "kind": "x"})
        storage.save("items", "b", {"id": "b", "kind": "y"})
        storage.save("items", "c", {"id": "c", "kind": "x"})
        assert {r["id"] for r in storage.find("items", {"kind": "x"})} == {"a", "c"}
        assert storage.count("items") == 3

    def test_find_by_typed_values(self, storage):
        storage.save("items", "a", {"id": "a", "version": 2, "paid": True, "charge_id": None})
        storage.save("items", "b", {"id": "b", "version": 3, "paid": False, "charge_id": "ch_1"})
        storage.save("items", "c", {"id": "c", "version": "2"})
        assert [r["id"] for r in storage.find("items", {"version": 2})] == ["a"]
        assert [r["id"] for r in storage.find("items", {"paid": False})] == ["b"]
        assert [r["id"] for r in storage.find("items", {"charge_id": None})] == ["a"]
        assert [r["id"] for r in storage.find("items", {"charge_id": "ch_1", "version": 3})] == ["b"]

    def test_delete_and_clear(self, storage):
        storage.save("items", "a", {"id": "a"})
        assert storage.delete("items", "a") is True
        assert storage.delete("items", "a") is False
        storage.save("items", "b", {"id": "b"})
        storage.clear_table("items")
        assert storage.count("items") == 0

    def test_loaded_record_is_a_copy(self, storage):
        storage.save("items", "a", {"id": "a", "tags": ["x"]})
        loaded = storage.load("items", "a")
        loaded["tags"].append("y")
        assert storage.load("items", "a")["tags"] == ["x"]


class TestConditionalWrites:
    """Test update_if and insert"""

    def test_update_if_matches(self, storage):
        storage.save("items", "a", {"id": "a", "status": "OPEN", "n": 1})
        assert storage.update_if("items", "a", {"status": "OPEN"}, {"id": "a", "status": "CLOSED", "n": 2})
        assert storage.load("items", "a")["status"] == "CLOSED"

    def test_update_if_stale(self, storage):
        storage.save("items", "a", {"id": "a", "status": "CLOSED"})
        assert not storage.update_if("items", "a", {"status": "OPEN"}, {"id": "a", "status": "X"})
        assert storage.load("items", "a")["status"] == "CLOSED"

    def test_update_if_missing_record(self, storage):
        assert not storage.update_if("items", "nope", {"status": "OPEN"}, {"id": "nope"})

    def test_insert_only_once(self, storage):
        assert storage.insert("items", "a", {"id": "a", "v": 1}) is True
        assert storage.insert("items", "a", {"id": "a", "v": 2}) is False
        assert storage.load("items", "a")["v"] == 1


class TestTransactions:
    """Test atomic units of work"""

    def test_commit(self, storage):
        with storage.atomic():
            storage.save("items", "a", {"id": "a"})
        assert storage.exists("items", "a")
        assert not storage.in_transaction

    def test_rollback_discards_writes(self, storage):
        storage.save("items", "a", {"id": "a", "v": 1})
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("items", "a", {"id": "a", "v": 2})
                storage.save("items", "b", {"id": "b"})
                raise RuntimeError("boom")
        assert storage.load("items", "a")["v"] == 1
        assert not storage.exists("items", "b")

    def test_inner_rollback_keeps_outer_writes(self, storage):
        with storage.atomic():
            storage.save("items", "outer", {"id": "outer"})
            with pytest.raises(RuntimeError):
                with storage.atomic():
                    storage.save("items", "inner", {"id": "inner"})
                    raise RuntimeError("inner failure")
        assert storage.exists("items", "outer")
        assert not storage.exists("items", "inner")

    def test_outer_rollback_discards_inner_commit(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("items", "inner", {"id": "inner"})
                raise RuntimeError("outer failure")
        assert not storage.exists("items", "inner")

    def test_on_commit_runs_after_outermost_commit(self, storage):
        calls = []
        with storage.atomic():
            with storage.atomic():
                storage.on_commit(lambda: calls.append("inner"))
            assert calls == []
        assert calls == ["inner"]

    def test_on_commit_discarded_on_rollback(self, storage):
        calls = []
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.on_commit(lambda: calls.append("x"))
                raise RuntimeError("boom")
        assert calls == []

    def test_on_commit_from_rolled_back_savepoint_is_dropped(self, storage):
        calls = []
        with storage.atomic():
            storage.on_commit(lambda: calls.append("outer"))
            with pytest.raises(RuntimeError):
                with storage.atomic():
                    storage.on_commit(lambda: calls.append("inner"))
                    raise RuntimeError("inner failure")
            with storage.atomic():
                storage.on_commit(lambda: calls.append("sibling"))
        assert calls == ["outer", "sibling"]

    def test_on_commit_from_committed_savepoint_dropped_with_outer(self, storage):
        calls = []
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.on_commit(lambda: calls.append("inner"))
                raise RuntimeError("outer failure")
        assert calls == []
        with storage.atomic():
            pass
        assert calls == []

    def test_on_commit_outside_transaction_runs_now(self, storage):
        calls = []
        storage.on_commit(lambda: calls.append("now"))
        assert calls == ["now"]

    def test_failing_callback_does_not_undo_commit(self, storage):
        def explode():
            raise RuntimeError("listener failed")

        with storage.atomic():
            storage.save("items", "a", {"id": "a"})
            storage.on_commit(explode)
        assert storage.exists("items", "a")


class TestRecordSerialization:
    """Test StorageRecord round trips through a backend"""

    def test_loan_round_trip(self, storage):
        now = datetime(2025, 1, 15, tzinfo=timezone.utc)
        loan = Loan(
            borrower_id="b1",
            lender_id="l1",
            principal_cents=50000,
            interest_rate_bps=800,
            term_months=6,
            amount=Decimal('500.00'),
            interest_rate=Decimal('8'),
            status=LoanStatus.ACCEPTED,
            rate_spread=Decimal('2'),
            **record_stamp(now)
        )
        storage.save("loans", loan.id, loan.to_dict())
        restored = Loan.from_dict(storage.load("loans", loan.id))
        assert restored.status == LoanStatus.ACCEPTED
        assert restored.rate_spread == Decimal('2')
        assert restored.created_at == now
        assert restored.principal == Decimal('500.00')


class TestCreateStorage:
    """Test backend selection from a URL"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        backend = create_storage(f"sqlite:///{tmp_path / 'test.db'}")
        assert isinstance(backend, SQLiteStorage)
        backend.close()

    def test_unknown_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("mongodb://localhost")
