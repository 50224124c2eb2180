# Append-only lifecycle timeline embedded in grievance / appointment documents

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import InvalidAction, InvalidEventDetails

logger = logging.getLogger(__name__)


class Action(str, Enum):
    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    STATUS_UPDATED = "STATUS_UPDATED"
    DEPARTMENT_TRANSFER = "DEPARTMENT_TRANSFER"


# ---------------------------------------------------------------------------
# Per-action payloads
# ---------------------------------------------------------------------------
class CreatedDetails(BaseModel):
    description: Optional[str] = None
    category: Optional[str] = None


class AssignedDetails(BaseModel):
    to_user_id: str = Field(..., min_length=1)
    to_user_name: str = Field(..., min_length=1)
    from_user_id: Optional[str] = None


class StatusUpdatedDetails(BaseModel):
    to_status: str = Field(..., min_length=1)
    from_status: Optional[str] = None
    remarks: Optional[str] = Field(None, max_length=2000)


class DepartmentTransferDetails(BaseModel):
    to_department_id: str = Field(..., min_length=1)
    from_department_id: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=2000)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
class _Event(BaseModel):
    timestamp: datetime
    performed_by: Optional[str] = None   # None = system

    @property
    def is_system(self) -> bool:
        return self.performed_by is None


class CreatedEvent(_Event):
    action: Literal["CREATED"] = "CREATED"
    details: CreatedDetails = Field(default_factory=CreatedDetails)


class AssignedEvent(_Event):
    action: Literal["ASSIGNED"] = "ASSIGNED"
    details: AssignedDetails


class StatusUpdatedEvent(_Event):
    action: Literal["STATUS_UPDATED"] = "STATUS_UPDATED"
    details: StatusUpdatedDetails


class DepartmentTransferEvent(_Event):
    action: Literal["DEPARTMENT_TRANSFER"] = "DEPARTMENT_TRANSFER"
    details: DepartmentTransferDetails


class LegacyEvent(_Event):
    """Stored event whose shape predates the typed variants."""
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)


TimelineEvent = Annotated[
    Union[CreatedEvent, AssignedEvent, StatusUpdatedEvent, DepartmentTransferEvent],
    Field(discriminator="action"),
]
_event_adapter = TypeAdapter(TimelineEvent)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    # pymongo hands back naive datetimes that are already UTC
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def build_event(action, performed_by: Optional[str] = None,
                details: Optional[dict] = None, *, now: Optional[datetime] = None):
    try:
        action = Action(action)
    except ValueError:
        raise InvalidAction(f"unknown timeline action: {action!r}")
    raw = {"action": action.value, "timestamp": now or utcnow(),
           "performed_by": performed_by, "details": details or {}}
    try:
        return _event_adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidEventDetails(f"invalid details for {action.value}: {e}") from e


def event_to_doc(event) -> dict:
    doc = event.model_dump(exclude_none=True)
    doc.setdefault("performed_by", None)
    return doc


def event_from_doc(doc: dict):
    try:
        return _event_adapter.validate_python(doc)
    except ValidationError:
        logger.debug("Timeline entry with action %r kept as legacy event", doc.get("action"))
        return LegacyEvent(
            action=str(doc.get("action", "UNKNOWN")),
            timestamp=doc.get("timestamp") or datetime.min.replace(tzinfo=timezone.utc),
            performed_by=doc.get("performed_by"),
            details=doc.get("details") or {})


def _last_timestamp(timeline: List[dict]) -> Optional[datetime]:
    if not timeline or not timeline[-1].get("timestamp"):
        return None
    return as_utc(timeline[-1]["timestamp"])


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------
def append_event(entity: dict, action, performed_by: Optional[str] = None,
                 details: Optional[dict] = None, *, now: Optional[datetime] = None):
    """Validate and append one event onto a loaded entity document.

    The first event of every entity is CREATED and CREATED never appears
    again. Timestamps never go backwards: a clock reading older than the
    previous event is clamped to it. Persist the returned event with
    :func:`append_update` in the same write as the state change it records.
    """
    timeline = entity.setdefault("timeline", [])
    if not timeline and action != Action.CREATED:
        raise InvalidAction("the first timeline event must be CREATED")
    if timeline and action == Action.CREATED:
        raise InvalidAction("entity already has a CREATED event")
    ts = as_utc(now) if now else utcnow()
    last = _last_timestamp(timeline)
    if last is not None and ts < last:
        ts = last
    event = build_event(action, performed_by, details, now=ts)
    timeline.append(event_to_doc(event))
    return event


def append_update(events, set_fields: Optional[dict] = None) -> dict:
    """Single Mongo update carrying the state change, its events and a version bump."""
    if not isinstance(events, (list, tuple)):
        events = [events]
    fields = dict(set_fields or {})
    fields.setdefault("updated_at", events[-1].timestamp)
    return {"$set": fields,
            "$push": {"timeline": {"$each": [event_to_doc(e) for e in events]}},
            "$inc": {"version": 1}}


def get_ordered_timeline(entity: dict) -> list:
    return [event_from_doc(e) for e in entity.get("timeline") or []]


def describe_event(event) -> str:
    if isinstance(event, LegacyEvent):
        return "Activity logged."
    d = event.details
    if event.action == Action.CREATED:
        return f"Registered under {d.category}." if d.category else "Registered."
    if event.action == Action.ASSIGNED:
        return f"Assigned to {d.to_user_name}."
    if event.action == Action.STATUS_UPDATED:
        text = (f"Status changed from {d.from_status} to {d.to_status}."
                if d.from_status else f"Status set to {d.to_status}.")
        return f"{text} Remarks: {d.remarks}" if d.remarks else text
    if event.action == Action.DEPARTMENT_TRANSFER:
        return f"Transferred to department {d.to_department_id}."
    return "Activity logged."
