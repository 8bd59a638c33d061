"""
Tests for storage backends, atomic blocks and record serialization
"""

import pytest
import tempfile
from decimal import Decimal
from datetime import datetime, timezone, date
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from microcredit.engine import storage_from_url
from microcredit.loans import LoanStatus
from microcredit.storage import InMemoryStorage, SQLiteStorage, StorageRecord


NOW = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)

test_data = {
    "id": "rec_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": NOW.isoformat(),
    "updated_at": NOW.isoformat()
}


@dataclass
class SampleRecord(StorageRecord):
    amount: Decimal
    due_date: date
    status: LoanStatus
    closed_at: Optional[datetime] = None
    note: Optional[str] = None


class TestStorageBackends:
    """Basic operations on both backends"""

    @pytest.fixture(params=["memory", "sqlite"])
    def storage(self, request, tmp_path):
        if request.param == "memory":
            storage = InMemoryStorage()
        else:
            storage = SQLiteStorage(tmp_path / "test.db")
        yield storage
        storage.close()

    def test_basic_operations(self, storage):
        storage.save("items", "rec_001", test_data)
        assert storage.load("items", "rec_001") == test_data
        assert storage.exists("items", "rec_001")
        assert not storage.exists("items", "missing")
        assert storage.load("items", "missing") is None

        storage.save("items", "rec_002", {"id": "rec_002", "name": "Other"})
        assert storage.count("items") == 2
        assert len(storage.load_all("items")) == 2
        assert [r["id"] for r in storage.find("items", {"name": "Other"})] == ["rec_002"]

        assert storage.delete("items", "rec_001")
        assert not storage.delete("items", "rec_001")
        assert storage.count("items") == 1

    def test_atomic_commits(self, storage):
        with storage.atomic():
            storage.save("items", "rec_001", test_data)

        assert storage.exists("items", "rec_001")
        assert not storage.in_transaction

    def test_atomic_rolls_back_on_error(self, storage):
        storage.save("items", "rec_001", test_data)

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("items", "rec_002", {"id": "rec_002"})
                storage.save("items", "rec_001", dict(test_data, name="Changed"))
                raise RuntimeError("boom")

        assert not storage.exists("items", "rec_002")
        assert storage.load("items", "rec_001")["name"] == "Test Record"
        assert not storage.in_transaction

    def test_nested_atomic_joins_outer_block(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("items", "inner", {"id": "inner"})
                assert storage.exists("items", "inner")
                raise RuntimeError("outer failure")

        # The inner block committed nothing on its own
        assert not storage.exists("items", "inner")

    def test_returned_data_is_a_copy(self):
        storage = InMemoryStorage()
        storage.save("items", "rec_001", test_data)

        loaded = storage.load("items", "rec_001")
        loaded["name"] = "Mutated"

        assert storage.load("items", "rec_001")["name"] == "Test Record"


class TestSQLitePersistence:
    """Data survives reopening the database file"""

    def test_reopen(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "microcredit.db"

            storage = SQLiteStorage(db_path)
            with storage.atomic():
                storage.save("items", "rec_001", test_data)
            storage.close()

            storage = SQLiteStorage(db_path)
            assert storage.load("items", "rec_001") == test_data
            storage.close()


class TestStorageRecord:
    """Typed serialization of records"""

    def test_round_trip(self):
        record = SampleRecord(
            id="r1", created_at=NOW, updated_at=NOW,
            amount=Decimal('1234.56'), due_date=date(2025, 1, 8),
            status=LoanStatus.ACTIVE, closed_at=NOW
        )

        data = record.to_dict()

        assert data["amount"] == "1234.56"
        assert data["due_date"] == "2025-01-08"
        assert data["status"] == "active"
        assert data["note"] is None
        assert SampleRecord.from_dict(data) == record

    def test_unknown_keys_ignored(self):
        record = SampleRecord(id="r1", created_at=NOW, updated_at=NOW,
                              amount=Decimal('1'), due_date=date(2025, 1, 8), status=LoanStatus.PENDING)
        data = dict(record.to_dict(), legacy_field="x")

        assert SampleRecord.from_dict(data) == record


class TestStorageFromUrl:
    """Backend selection from the configured database URL"""

    def test_memory(self):
        assert isinstance(storage_from_url("memory://"), InMemoryStorage)

    def test_sqlite(self, tmp_path):
        storage = storage_from_url(f"sqlite:///{tmp_path / 'engine.db'}")

        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path.endswith("engine.db")
        storage.close()

    def test_unsupported(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            storage_from_url("postgresql://localhost/microcredit")
