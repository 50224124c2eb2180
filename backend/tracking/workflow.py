# Grievance / appointment lifecycles: ID on create, guarded state changes,
# timeline entries written in the same document update as the change.

import logging
import uuid
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from pymongo import ReturnDocument

from .errors import (ConcurrentModification, EntityNotFound, InvalidEventDetails,
                     InvalidTransition)
from .ids import ID_PATTERN, SEQUENCES, SequenceAllocator
from .notifications import Notifier
from .store import guarded
from .timeline import (Action, append_event, append_update, get_ordered_timeline,
                       utcnow)

logger = logging.getLogger(__name__)


class GrievanceStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class AppointmentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


G, A = GrievanceStatus, AppointmentStatus


def _edges(table) -> Dict[str, FrozenSet[str]]:
    return {src.value: frozenset(dst.value for dst in targets) for src, targets in table.items()}


TRANSITIONS: Dict[str, Dict[str, FrozenSet[str]]] = {
    "grievance": _edges({
        G.PENDING: {G.ASSIGNED, G.IN_PROGRESS, G.RESOLVED, G.REJECTED, G.CANCELLED},
        G.ASSIGNED: {G.IN_PROGRESS, G.RESOLVED, G.REJECTED, G.CANCELLED},
        G.IN_PROGRESS: {G.RESOLVED, G.REJECTED, G.CANCELLED},
        G.RESOLVED: {G.CLOSED},
    }),
    "appointment": _edges({
        A.PENDING: {A.CONFIRMED, A.CANCELLED},
        A.CONFIRMED: {A.COMPLETED, A.CANCELLED, A.NO_SHOW},
    }),
}

STATUS_TYPES = {"grievance": GrievanceStatus, "appointment": AppointmentStatus}

# Extra fields a caller may set together with a status change
STATUS_EXTRA_FIELDS = {
    "grievance": {G.RESOLVED.value: {"resolution"}},
    "appointment": {A.CONFIRMED.value: {"appointment_date", "appointment_time"}},
}


def is_terminal(kind: str, status: str) -> bool:
    return status not in TRANSITIONS[kind]


def allowed_transitions(kind: str, status: str) -> FrozenSet[str]:
    return TRANSITIONS[kind].get(status, frozenset())


class EntityWorkflow:
    """Create, load and mutate one kind of tracked entity.

    Concurrency policy is optimistic: each document carries a ``version``
    that every mutation filters on and increments. Losing a race raises
    ConcurrentModification instead of overwriting the other writer.
    """

    def __init__(self, kind: str, db, allocator: SequenceAllocator,
                 notifier: Optional[Notifier] = None, timeout: Optional[float] = None):
        if kind not in SEQUENCES:
            raise ValueError(f"unknown entity kind: {kind}")
        self.kind = kind
        self.seq = SEQUENCES[kind]
        self.collection = db[self.seq.collection]
        self.allocator = allocator
        self.notifier = notifier
        self.timeout = timeout
        self.statuses = STATUS_TYPES[kind]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _query(self, ref: str) -> dict:
        if isinstance(ref, str) and ID_PATTERN.match(ref):
            return {self.seq.id_field: ref}
        return {"_id": ref}

    def get(self, ref: str, include_deleted: bool = False) -> dict:
        query = self._query(ref)
        if not include_deleted:
            query["is_deleted"] = {"$ne": True}
        doc = guarded(self.collection.find_one, query, timeout=self.timeout)
        if doc is None:
            raise EntityNotFound(f"{self.kind} {ref} not found")
        return doc

    def timeline(self, ref: str) -> list:
        return get_ordered_timeline(self.get(ref))

    def _match(self, filters: Optional[dict]) -> dict:
        match = {k: v for k, v in (filters or {}).items() if v is not None}
        match["is_deleted"] = {"$ne": True}
        return match

    def find_many(self, filters: Optional[dict] = None, skip: int = 0, limit: int = 50) -> List[dict]:
        query = self._match(filters)
        return guarded(
            lambda: list(self.collection.find(query).sort("created_at", -1).skip(skip).limit(limit)),
            timeout=self.timeout)

    def status_counts(self, filters: Optional[dict] = None) -> Dict[str, int]:
        counts = {s.value: 0 for s in self.statuses}
        for row in self.breakdown(filters):
            counts[row["_id"]] = row["count"]
        return counts

    def breakdown(self, filters: Optional[dict] = None, group_by: Any = "$status",
                  status_counts: Optional[Dict[str, str]] = None,
                  sort: Optional[Dict[str, int]] = None) -> List[dict]:
        """Live records grouped on *group_by*, largest group first.

        *status_counts* maps extra output fields to a status, each counting
        the group's records currently in that status.
        """
        group: Dict[str, Any] = {"_id": group_by, "count": {"$sum": 1}}
        for field, status in (status_counts or {}).items():
            group[field] = {"$sum": {"$cond": [{"$eq": ["$status", status]}, 1, 0]}}
        pipeline = [
            {"$match": self._match(filters)},
            {"$group": group},
            {"$sort": sort or {"count": -1, "_id": 1}},
        ]
        return guarded(lambda: list(self.collection.aggregate(pipeline)), timeout=self.timeout)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(self, fields: Dict[str, Any], performed_by: Optional[str] = None) -> dict:
        """Insert a new entity under a freshly allocated ID.

        If allocation fails nothing is inserted. If the insert fails the
        allocated number stays unused; the counter itself never rewinds.
        """
        display_id = self.allocator.next_id(self.kind, timeout=self.timeout)
        now = utcnow()
        doc = {
            **fields,
            "_id": str(uuid.uuid4()),
            self.seq.id_field: display_id,
            "status": self.statuses.PENDING.value,
            "assigned_to": None, "assigned_at": None,
            "is_deleted": False,
            "version": 0,
            "timeline": [],
            "created_at": now, "updated_at": now,
        }
        append_event(doc, Action.CREATED, performed_by, {
            "description": fields.get("description") or fields.get("purpose"),
            "category": fields.get("category"),
        }, now=now)
        guarded(self.collection.insert_one, doc, timeout=self.timeout)
        logger.info("Created %s %s", self.kind, display_id)
        return doc

    def _commit(self, doc: dict, events: list, set_fields: dict,
                expected_version: Optional[int]) -> dict:
        current = doc.get("version")
        if expected_version is not None and expected_version != (current or 0):
            raise ConcurrentModification(doc[self.seq.id_field], expected_version)
        version_filter = current if current is not None else {"$exists": False}
        updated = guarded(
            self.collection.find_one_and_update,
            {"_id": doc["_id"], "version": version_filter, "is_deleted": {"$ne": True}},
            append_update(events, set_fields),
            return_document=ReturnDocument.AFTER, timeout=self.timeout)
        if updated is None:
            logger.warning("Lost update race on %s %s at version %s",
                           self.kind, doc[self.seq.id_field], current)
            raise ConcurrentModification(doc[self.seq.id_field], current or 0)
        return updated

    def _notify(self, doc: dict, events: Iterable) -> None:
        if self.notifier is None:
            return
        for event in events:
            self.notifier.notify(self.kind, doc[self.seq.id_field], doc, event)

    def _status(self, value) -> str:
        try:
            return self.statuses(value).value
        except ValueError:
            raise InvalidTransition(self.kind, "?", str(value))

    def update_status(self, ref: str, to_status, performed_by: Optional[str] = None,
                      remarks: Optional[str] = None, expected_version: Optional[int] = None,
                      extra: Optional[dict] = None) -> dict:
        doc = self.get(ref)
        to_status = self._status(to_status)
        from_status = doc["status"]
        if to_status not in allowed_transitions(self.kind, from_status):
            raise InvalidTransition(self.kind, from_status, to_status)

        event = append_event(doc, Action.STATUS_UPDATED, performed_by, {
            "to_status": to_status, "from_status": from_status, "remarks": remarks})
        ts = event.timestamp
        set_fields: Dict[str, Any] = {"status": to_status}
        if to_status in (G.RESOLVED, A.COMPLETED):
            set_fields["resolved_at"] = ts
        if to_status == A.COMPLETED:
            set_fields["completed_at"] = ts
        if to_status == G.CLOSED:
            set_fields["closed_at"] = ts
        permitted = STATUS_EXTRA_FIELDS[self.kind].get(to_status, set())
        for key, value in (extra or {}).items():
            if key in permitted and value is not None:
                set_fields[key] = value

        updated = self._commit(doc, [event], set_fields, expected_version)
        logger.info("%s %s: %s -> %s by %s", self.kind, updated[self.seq.id_field],
                    from_status, to_status, performed_by or "system")
        self._notify(updated, [event])
        return updated

    def assign(self, ref: str, to_user_id: str, to_user_name: str,
               performed_by: Optional[str] = None, expected_version: Optional[int] = None,
               to_department_id: Optional[str] = None) -> dict:
        """Assign to a staff user while the entity is still open.

        A pending grievance moves to ASSIGNED in the same write. When the
        assignee sits in another department the entity follows them and a
        DEPARTMENT_TRANSFER entry is recorded too.
        """
        doc = self.get(ref)
        if is_terminal(self.kind, doc["status"]):
            raise InvalidTransition(self.kind, doc["status"], "ASSIGNED")
        events = [append_event(doc, Action.ASSIGNED, performed_by, {
            "to_user_id": to_user_id, "to_user_name": to_user_name,
            "from_user_id": doc.get("assigned_to")})]
        set_fields: Dict[str, Any] = {"assigned_to": to_user_id, "assigned_at": events[0].timestamp}

        if self.kind == "grievance" and doc["status"] == G.PENDING:
            events.append(append_event(doc, Action.STATUS_UPDATED, performed_by, {
                "to_status": G.ASSIGNED.value, "from_status": doc["status"]}))
            set_fields["status"] = G.ASSIGNED.value

        if to_department_id and to_department_id != doc.get("department_id"):
            events.append(append_event(doc, Action.DEPARTMENT_TRANSFER, performed_by, {
                "to_department_id": to_department_id,
                "from_department_id": doc.get("department_id"),
                "reason": "Synchronized with assigned officer"}))
            set_fields["department_id"] = to_department_id

        updated = self._commit(doc, events, set_fields, expected_version)
        logger.info("%s %s assigned to %s (%s)", self.kind, updated[self.seq.id_field],
                    to_user_name, to_user_id)
        self._notify(updated, events)
        return updated

    def transfer_department(self, ref: str, to_department_id: str,
                            performed_by: Optional[str] = None, reason: Optional[str] = None,
                            expected_version: Optional[int] = None) -> dict:
        doc = self.get(ref)
        if doc.get("department_id") == to_department_id:
            raise InvalidEventDetails(f"{self.kind} is already in department {to_department_id}")
        event = append_event(doc, Action.DEPARTMENT_TRANSFER, performed_by, {
            "to_department_id": to_department_id,
            "from_department_id": doc.get("department_id"),
            "reason": reason})
        updated = self._commit(doc, [event], {"department_id": to_department_id}, expected_version)
        logger.info("%s %s transferred to department %s", self.kind,
                    updated[self.seq.id_field], to_department_id)
        return updated

    def soft_delete(self, ref: str, performed_by: Optional[str] = None) -> dict:
        doc = self.get(ref)
        now = utcnow()
        updated = guarded(
            self.collection.find_one_and_update,
            {"_id": doc["_id"], "is_deleted": {"$ne": True}},
            {"$set": {"is_deleted": True, "deleted_at": now, "deleted_by": performed_by,
                      "updated_at": now},
             "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER, timeout=self.timeout)
        if updated is None:
            raise EntityNotFound(f"{self.kind} {ref} not found")
        logger.info("%s %s deleted by %s", self.kind, doc[self.seq.id_field], performed_by)
        return updated
