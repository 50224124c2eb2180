"""
Sequential ID allocation: formatting, atomic counters, bootstrap from existing data.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest
from pymongo.errors import AutoReconnect, DuplicateKeyError, NetworkTimeout

from tracking import store
from tracking.errors import (IdSpaceExhausted, InvalidCounterName, StorageTimeout,
                             StorageUnavailable)
from tracking.ids import MAX_SEQUENCE, SequenceAllocator, format_id, parse_id


class SerializedCollection:
    """Stands in for the server's per-document atomicity, which mongomock lacks across threads."""

    def __init__(self, collection):
        self._collection = collection
        self._lock = threading.Lock()

    def find_one_and_update(self, *args, **kwargs):
        with self._lock:
            return self._collection.find_one_and_update(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._collection, name)


# ═══════════════════════════════════════════════════════════════════════════════
# FORMATTING
# ═══════════════════════════════════════════════════════════════════════════════

class TestFormat:
    def test_zero_padded(self):
        assert format_id("GRV", 1) == "GRV00000001"
        assert format_id("APT", 12345) == "APT00012345"
        assert format_id("GRV", 12345678) == "GRV12345678"

    def test_upper_bound(self):
        assert format_id("GRV", MAX_SEQUENCE) == "GRV99999999"
        with pytest.raises(IdSpaceExhausted):
            format_id("GRV", MAX_SEQUENCE + 1)

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            format_id("GRV", -1)

    def test_parse(self):
        assert parse_id("GRV", "GRV00000042") == 42
        assert parse_id("GRV", "APT00000042") is None
        assert parse_id("GRV", "GRV-2024-001") is None
        assert parse_id("GRV", None) is None


# ═══════════════════════════════════════════════════════════════════════════════
# ALLOCATION
# ═══════════════════════════════════════════════════════════════════════════════

class TestAllocate:
    def test_first_value_is_one_then_sequential(self, allocator):
        assert [allocator.allocate("grievance") for _ in range(3)] == [1, 2, 3]

    def test_counters_are_independent(self, allocator):
        assert allocator.next_id("grievance") == "GRV00000001"
        assert allocator.next_id("grievance") == "GRV00000002"
        assert allocator.next_id("appointment") == "APT00000001"

    def test_counter_document_is_persisted(self, db, allocator):
        allocator.allocate("grievance")
        doc = db.counters.find_one({"_id": "grievance"})
        assert doc["value"] == 1
        assert "created_at" in doc and "updated_at" in doc

    def test_concurrent_callers_get_distinct_contiguous_values(self, db):
        allocator = SequenceAllocator(db)
        allocator.counters = SerializedCollection(db.counters)
        with ThreadPoolExecutor(max_workers=8) as pool:
            values = list(pool.map(lambda _: allocator.allocate("grievance"), range(200)))
        assert sorted(values) == list(range(1, 201))

    def test_exhausted_space(self, db, allocator):
        db.counters.insert_one({"_id": "grievance", "value": MAX_SEQUENCE})
        with pytest.raises(IdSpaceExhausted):
            allocator.next_id("grievance")
        assert db.counters.find_one({"_id": "grievance"})["value"] == MAX_SEQUENCE
        with pytest.raises(IdSpaceExhausted):
            allocator.next_id("grievance")
        assert allocator.current_value("grievance") == MAX_SEQUENCE

    def test_limit_stops_counter_in_place(self, allocator):
        assert [allocator.allocate("grievance", limit=3) for _ in range(3)] == [1, 2, 3]
        with pytest.raises(IdSpaceExhausted):
            allocator.allocate("grievance", limit=3)
        assert allocator.current_value("grievance") == 3
        assert allocator.allocate("grievance") == 4

    @pytest.mark.parametrize("name", ["", "Grievance", "1st", "has space", "x" * 65, None])
    def test_invalid_counter_name_touches_nothing(self, name):
        fake_db = MagicMock()
        allocator = SequenceAllocator(fake_db)
        with pytest.raises(InvalidCounterName):
            allocator.allocate(name)
        fake_db.counters.find_one_and_update.assert_not_called()

    def test_unknown_entity_type(self, allocator):
        with pytest.raises(InvalidCounterName):
            allocator.next_id("complaint")

    def test_first_upsert_race_is_retried(self):
        fake_db = MagicMock()
        fake_db.counters.find_one_and_update.side_effect = [
            DuplicateKeyError("E11000 duplicate key"), {"_id": "grievance", "value": 1}]
        fake_db.counters.find_one.return_value = {"_id": "grievance", "value": 0}
        assert SequenceAllocator(fake_db).allocate("grievance") == 1
        assert fake_db.counters.find_one_and_update.call_count == 2


# ═══════════════════════════════════════════════════════════════════════════════
# STORE FAILURES
# ═══════════════════════════════════════════════════════════════════════════════

class TestStoreFailures:
    def test_unreachable_store(self):
        fake_db = MagicMock()
        fake_db.counters.find_one_and_update.side_effect = AutoReconnect("connection refused")
        with pytest.raises(StorageUnavailable) as exc:
            SequenceAllocator(fake_db).allocate("grievance")
        assert not isinstance(exc.value, StorageTimeout)

    def test_timeout_is_reported_as_storage_timeout(self):
        fake_db = MagicMock()
        fake_db.counters.find_one_and_update.side_effect = NetworkTimeout("timed out")
        with pytest.raises(StorageTimeout):
            SequenceAllocator(fake_db, timeout=0.5).allocate("grievance")

    def test_caller_timeout_is_applied(self, monkeypatch, allocator):
        seen = []

        @contextmanager
        def fake_timeout(seconds):
            seen.append(seconds)
            yield

        monkeypatch.setattr(store.pymongo, "timeout", fake_timeout)
        allocator.allocate("grievance", timeout=2.5)
        assert seen == [2.5]


# ═══════════════════════════════════════════════════════════════════════════════
# BOOTSTRAP
# ═══════════════════════════════════════════════════════════════════════════════

class TestInitializeCounter:
    def _seed(self, db):
        db.grievances.insert_many([
            {"_id": "a", "grievance_id": "GRV00000042"},
            {"_id": "b", "grievance_id": "GRV00000007"},
            {"_id": "c", "grievance_id": "GRV-2023-0099"},
            {"_id": "d"},
        ])

    def test_seeds_from_highest_existing(self, db, allocator):
        self._seed(db)
        assert allocator.initialize_counter("grievance", db.grievances, "grievance_id", "GRV") == 42
        assert allocator.next_id("grievance") == "GRV00000043"

    def test_idempotent(self, db, allocator):
        self._seed(db)
        allocator.initialize_counter("grievance", db.grievances, "grievance_id", "GRV")
        db.grievances.insert_one({"_id": "e", "grievance_id": "GRV00000100"})
        assert allocator.initialize_counter("grievance", db.grievances, "grievance_id", "GRV") == 42

    def test_existing_counter_left_untouched(self, db, allocator):
        self._seed(db)
        db.counters.insert_one({"_id": "grievance", "value": 5})
        assert allocator.initialize_counter("grievance", db.grievances, "grievance_id", "GRV") == 5

    def test_soft_deleted_records_are_counted(self, db, allocator):
        self._seed(db)
        db.grievances.insert_one({"_id": "f", "grievance_id": "GRV00000050", "is_deleted": True})
        assert allocator.initialize_counter("grievance", db.grievances, "grievance_id", "GRV") == 50

    def test_malformed_ids_are_logged_and_skipped(self, db, allocator, caplog):
        self._seed(db)
        with caplog.at_level(logging.WARNING, logger="tracking.ids"):
            allocator.initialize_counter("grievance", db.grievances, "grievance_id", "GRV")
        assert "GRV-2023-0099" in caplog.text
        assert "has no grievance_id" in caplog.text

    def test_empty_collection_starts_at_zero(self, db, allocator):
        assert allocator.initialize_counters() == {"grievance": 0, "appointment": 0}
        assert allocator.next_id("appointment") == "APT00000001"

    def test_highest_id_read_by_sorted_lookup(self):
        collection = MagicMock()
        collection.find_one.return_value = {"_id": "a", "grievance_id": "GRV00000042"}
        collection.find.return_value = iter([])
        allocator = SequenceAllocator(MagicMock())
        assert allocator.scan_existing_max_id(collection, "grievance_id", "GRV") == 42
        assert collection.find_one.call_args.kwargs["sort"] == [("grievance_id", -1)]
        (odd_filter, _), _ = collection.find.call_args
        assert "$not" in odd_filter["grievance_id"]
