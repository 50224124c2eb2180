"""
Grievance / appointment workflows against an in-memory database.
"""

import copy
from unittest.mock import MagicMock

import pytest
from pymongo.errors import AutoReconnect

from tracking.errors import (ConcurrentModification, EntityNotFound, InvalidEventDetails,
                             InvalidTransition, StorageUnavailable)
from tracking.ids import SequenceAllocator
from tracking.notifications import Notifier, build_notifications, normalize_phone
from tracking.timeline import build_event
from tracking.workflow import EntityWorkflow, allowed_transitions, is_terminal


GRIEVANCE = {
    "company_id": "company-a", "department_id": "dept-water",
    "citizen_name": "Sunita Gaikwad", "citizen_phone": "98900 12345",
    "description": "No piped water for nine days", "category": "Water Supply",
    "priority": "HIGH", "language": "mr",
}

APPOINTMENT = {
    "company_id": "company-a", "department_id": "dept-water",
    "citizen_name": "Ramesh Kamble", "citizen_phone": "9890012346",
    "purpose": "Pipeline extension", "language": "en",
}


class FailingWrites:
    """Collection whose find_one_and_update always fails; reads pass through."""

    def __init__(self, collection):
        self._collection = collection

    def find_one_and_update(self, *args, **kwargs):
        raise AutoReconnect("primary stepped down")

    def __getattr__(self, name):
        return getattr(self._collection, name)


# ═══════════════════════════════════════════════════════════════════════════════
# CREATE
# ═══════════════════════════════════════════════════════════════════════════════

class TestCreate:
    def test_create_assigns_id_and_created_event(self, grievances):
        g = grievances.create(dict(GRIEVANCE), "user-admin")
        assert g["grievance_id"] == "GRV00000001"
        assert g["status"] == "PENDING"
        assert g["version"] == 0
        assert len(g["timeline"]) == 1
        event = grievances.timeline(g["grievance_id"])[0]
        assert event.action == "CREATED"
        assert event.performed_by == "user-admin"
        assert event.details.category == "Water Supply"

    def test_ids_are_sequential_per_kind(self, grievances, appointments):
        assert grievances.create(dict(GRIEVANCE))["grievance_id"] == "GRV00000001"
        assert grievances.create(dict(GRIEVANCE))["grievance_id"] == "GRV00000002"
        assert appointments.create(dict(APPOINTMENT))["appointment_id"] == "APT00000001"

    def test_failed_allocation_inserts_nothing(self, db):
        allocator = MagicMock(spec=SequenceAllocator)
        allocator.next_id.side_effect = StorageUnavailable("down")
        flow = EntityWorkflow("grievance", db, allocator)
        with pytest.raises(StorageUnavailable):
            flow.create(dict(GRIEVANCE))
        assert db.grievances.count_documents({}) == 0

    def test_lookup_by_internal_or_display_id(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        assert grievances.get(g["_id"])["grievance_id"] == "GRV00000001"
        assert grievances.get("GRV00000001")["_id"] == g["_id"]
        with pytest.raises(EntityNotFound):
            grievances.get("GRV00000099")

    def test_unknown_kind(self, db, allocator):
        with pytest.raises(ValueError):
            EntityWorkflow("complaint", db, allocator)


# ═══════════════════════════════════════════════════════════════════════════════
# STATUS TRANSITIONS
# ═══════════════════════════════════════════════════════════════════════════════

class TestStatus:
    def test_full_grievance_path(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        grievances.update_status(g["_id"], "IN_PROGRESS", "op", "Crew dispatched")
        grievances.update_status(g["_id"], "RESOLVED", "op", extra={"resolution": "Joint replaced"})
        g = grievances.update_status(g["_id"], "CLOSED", "admin")
        assert g["status"] == "CLOSED"
        assert g["resolution"] == "Joint replaced"
        assert g["resolved_at"] is not None and g["closed_at"] is not None
        assert g["version"] == 3
        actions = [e.action for e in grievances.timeline(g["_id"])]
        assert actions == ["CREATED", "STATUS_UPDATED", "STATUS_UPDATED", "STATUS_UPDATED"]

    def test_invalid_transition_leaves_entity_untouched(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        with pytest.raises(InvalidTransition):
            grievances.update_status(g["_id"], "CLOSED")
        stored = grievances.get(g["_id"])
        assert stored["status"] == "PENDING"
        assert stored["version"] == 0
        assert len(stored["timeline"]) == 1

    def test_unknown_status(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        with pytest.raises(InvalidTransition):
            grievances.update_status(g["_id"], "ESCALATED")

    def test_terminal_states(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        grievances.update_status(g["_id"], "REJECTED", "admin", "Outside jurisdiction")
        assert is_terminal("grievance", "REJECTED")
        with pytest.raises(InvalidTransition):
            grievances.update_status(g["_id"], "IN_PROGRESS")

    def test_extra_fields_only_with_matching_status(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        g = grievances.update_status(g["_id"], "IN_PROGRESS", extra={"resolution": "too early"})
        assert "resolution" not in g

    def test_appointment_path(self, appointments):
        a = appointments.create(dict(APPOINTMENT))
        a = appointments.update_status(a["_id"], "CONFIRMED", "admin",
                                       extra={"appointment_date": "2026-11-02", "appointment_time": "11:00"})
        assert (a["appointment_date"], a["appointment_time"]) == ("2026-11-02", "11:00")
        a = appointments.update_status(a["_id"], "COMPLETED", "admin")
        assert a["completed_at"] is not None
        assert allowed_transitions("appointment", a["status"]) == frozenset()

    def test_appointment_no_show_requires_confirmation(self, appointments):
        a = appointments.create(dict(APPOINTMENT))
        with pytest.raises(InvalidTransition):
            appointments.update_status(a["_id"], "NO_SHOW")


# ═══════════════════════════════════════════════════════════════════════════════
# ASSIGNMENT & TRANSFER
# ═══════════════════════════════════════════════════════════════════════════════

class TestAssign:
    def test_pending_grievance_moves_to_assigned(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        g = grievances.assign(g["_id"], "user-op", "Amol Pawar", "user-admin")
        assert g["status"] == "ASSIGNED"
        assert g["assigned_to"] == "user-op"
        assert g["version"] == 1
        actions = [e.action for e in grievances.timeline(g["_id"])]
        assert actions == ["CREATED", "ASSIGNED", "STATUS_UPDATED"]

    def test_reassign_records_previous_assignee(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        grievances.assign(g["_id"], "user-op", "Amol Pawar")
        g = grievances.assign(g["_id"], "user-op2", "Neha Kulkarni")
        last = grievances.timeline(g["_id"])[-1]
        assert last.action == "ASSIGNED"
        assert last.details.from_user_id == "user-op"
        assert g["status"] == "ASSIGNED"

    def test_assignee_in_other_department_moves_entity(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        g = grievances.assign(g["_id"], "user-op", "Neha Kulkarni", to_department_id="dept-health")
        assert g["department_id"] == "dept-health"
        assert [e.action for e in grievances.timeline(g["_id"])][-1] == "DEPARTMENT_TRANSFER"

    def test_appointment_assignment_keeps_status(self, appointments):
        a = appointments.create(dict(APPOINTMENT))
        a = appointments.assign(a["_id"], "user-op", "Amol Pawar")
        assert a["status"] == "PENDING"
        assert len(a["timeline"]) == 2

    def test_closed_entity_cannot_be_assigned(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        grievances.update_status(g["_id"], "CANCELLED", "citizen")
        with pytest.raises(InvalidTransition):
            grievances.assign(g["_id"], "user-op", "Amol Pawar")

    def test_transfer(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        g = grievances.transfer_department(g["_id"], "dept-health", "admin", "Wrong department")
        assert g["department_id"] == "dept-health"
        event = grievances.timeline(g["_id"])[-1]
        assert event.details.from_department_id == "dept-water"
        assert event.details.reason == "Wrong department"

    def test_transfer_to_same_department(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        with pytest.raises(InvalidEventDetails):
            grievances.transfer_department(g["_id"], "dept-water")


# ═══════════════════════════════════════════════════════════════════════════════
# CONCURRENCY & ATOMICITY
# ═══════════════════════════════════════════════════════════════════════════════

class TestConcurrency:
    def test_expected_version_mismatch(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        with pytest.raises(ConcurrentModification):
            grievances.update_status(g["_id"], "IN_PROGRESS", expected_version=3)
        grievances.update_status(g["_id"], "IN_PROGRESS", expected_version=0)

    def test_lost_race_is_rejected(self, grievances, monkeypatch):
        g = grievances.create(dict(GRIEVANCE))
        stale = grievances.get(g["_id"])
        grievances.update_status(g["_id"], "IN_PROGRESS", "op-1")

        monkeypatch.setattr(grievances, "get", lambda ref, include_deleted=False: copy.deepcopy(stale))
        with pytest.raises(ConcurrentModification):
            grievances.update_status(g["_id"], "REJECTED", "op-2")

        stored = grievances.collection.find_one({"_id": g["_id"]})
        assert stored["status"] == "IN_PROGRESS"
        assert len(stored["timeline"]) == 2

    def test_failed_write_records_neither_change_nor_event(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        real = grievances.collection
        grievances.collection = FailingWrites(real)
        with pytest.raises(StorageUnavailable):
            grievances.assign(g["_id"], "user-op", "Amol Pawar")
        stored = real.find_one({"_id": g["_id"]})
        assert stored["status"] == "PENDING"
        assert stored["assigned_to"] is None
        assert len(stored["timeline"]) == 1

    def test_legacy_document_without_version(self, db, grievances):
        g = grievances.create(dict(GRIEVANCE))
        db.grievances.update_one({"_id": g["_id"]}, {"$unset": {"version": ""}})
        g = grievances.update_status(g["_id"], "IN_PROGRESS")
        assert g["version"] == 1


# ═══════════════════════════════════════════════════════════════════════════════
# READS & SOFT DELETE
# ═══════════════════════════════════════════════════════════════════════════════

class TestReads:
    def test_find_many_and_counts(self, grievances):
        first = grievances.create(dict(GRIEVANCE))
        grievances.create(dict(GRIEVANCE, department_id="dept-health"))
        grievances.update_status(first["_id"], "IN_PROGRESS")
        assert len(grievances.find_many({"department_id": "dept-health"})) == 1
        assert len(grievances.find_many({"company_id": "company-a", "status": None})) == 2
        counts = grievances.status_counts({"company_id": "company-a"})
        assert counts["PENDING"] == 1
        assert counts["IN_PROGRESS"] == 1
        assert counts["CLOSED"] == 0

    def test_breakdown_counts_statuses_per_group(self, grievances):
        first = grievances.create(dict(GRIEVANCE))
        grievances.create(dict(GRIEVANCE))
        grievances.create(dict(GRIEVANCE, department_id="dept-health"))
        grievances.update_status(first["_id"], "IN_PROGRESS")
        grievances.update_status(first["_id"], "RESOLVED")
        rows = grievances.breakdown({"company_id": "company-a"}, "$department_id",
                                    {"pending": "PENDING", "resolved": "RESOLVED"})
        assert rows == [
            {"_id": "dept-water", "count": 2, "pending": 1, "resolved": 1},
            {"_id": "dept-health", "count": 1, "pending": 1, "resolved": 0},
        ]

    def test_breakdown_skips_deleted(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        grievances.create(dict(GRIEVANCE))
        grievances.soft_delete(g["_id"])
        assert grievances.breakdown() == [{"_id": "PENDING", "count": 1}]

    def test_soft_delete(self, grievances):
        g = grievances.create(dict(GRIEVANCE))
        grievances.soft_delete(g["_id"], "admin")
        with pytest.raises(EntityNotFound):
            grievances.get(g["_id"])
        assert grievances.get(g["_id"], include_deleted=True)["deleted_by"] == "admin"
        assert grievances.find_many() == []
        with pytest.raises(EntityNotFound):
            grievances.update_status(g["_id"], "IN_PROGRESS")

    def test_deleted_ids_are_not_reissued(self, db, grievances):
        g = grievances.create(dict(GRIEVANCE))
        grievances.soft_delete(g["_id"])
        db.counters.drop()
        SequenceAllocator(db).initialize_counters()
        assert grievances.create(dict(GRIEVANCE))["grievance_id"] == "GRV00000002"


# ═══════════════════════════════════════════════════════════════════════════════
# NOTIFICATIONS
# ═══════════════════════════════════════════════════════════════════════════════

class TestNotifications:
    @pytest.mark.parametrize("raw,expected", [
        ("98900 12345", "919890012345"),
        ("+91-98900-12345", "919890012345"),
        ("12345", None),
        (None, None),
    ])
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_assignment_queues_email_to_assignee(self, db, grievances):
        g = grievances.create(dict(GRIEVANCE))
        grievances.assign(g["_id"], "user-op", "Amol Pawar")
        emails = list(db.notification_outbox.find({"channel": "email", "action": "ASSIGNED"}))
        assert len(emails) == 1
        assert emails[0]["recipient_id"] == "user-op"
        assert "GRV00000001" in emails[0]["message"]

    def test_status_change_notifies_citizen_on_whatsapp(self, db, grievances):
        g = grievances.create(dict(GRIEVANCE))
        grievances.update_status(g["_id"], "IN_PROGRESS", "op", "Crew dispatched")
        msgs = list(db.notification_outbox.find({"channel": "whatsapp"}))
        assert len(msgs) == 1
        assert msgs[0]["recipient_phone"] == "919890012345"
        assert "Crew dispatched" in msgs[0]["message"]

    def test_other_events_are_silent(self):
        event = build_event("DEPARTMENT_TRANSFER", "admin", {"to_department_id": "dept-2"})
        assert build_notifications("grievance", "GRV00000001", {}, event) == []

    def test_outbox_failure_does_not_undo_change(self, db, allocator):
        broken = MagicMock()
        broken.notification_outbox.insert_many.side_effect = AutoReconnect("down")
        flow = EntityWorkflow("grievance", db, allocator, Notifier(broken))
        g = flow.create(dict(GRIEVANCE))
        g = flow.update_status(g["_id"], "IN_PROGRESS")
        assert g["status"] == "IN_PROGRESS"
        assert db.grievances.find_one({"_id": g["_id"]})["status"] == "IN_PROGRESS"
