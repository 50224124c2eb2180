# Outbound notifications queued after a committed assignment or status change
#
# Delivery (WhatsApp / email) is done by a separate worker that drains the
# notification_outbox collection; this module only decides who hears about
# what and records it.

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .errors import StorageUnavailable
from .store import guarded
from .timeline import Action, describe_event, utcnow

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    entity_type: str
    entity_id: str
    action: str
    recipient_id: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    channel: str = "whatsapp"
    message: str
    status: str = "queued"
    created_at: datetime = Field(default_factory=utcnow)


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits only, with the India country code added to bare 10-digit numbers."""
    if not phone:
        return None
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) == 10:
        return f"91{digits}"
    if len(digits) >= 11:
        return digits
    return None


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """Keep the last four digits only, for logs."""
    if not phone:
        return phone
    return "*" * max(len(phone) - 4, 0) + phone[-4:]


def build_notifications(entity_type: str, entity_id: str, entity: dict, event) -> List[Notification]:
    label = "Grievance" if entity_type == "grievance" else "Appointment"
    text = describe_event(event)
    out: List[Notification] = []
    if event.action == Action.ASSIGNED:
        d = event.details
        out.append(Notification(
            entity_type=entity_type, entity_id=entity_id, action=event.action,
            recipient_id=d.to_user_id, recipient_name=d.to_user_name,
            channel="email",
            message=f"{label} {entity_id} assigned to you. {text}"))
    elif event.action == Action.STATUS_UPDATED:
        citizen_phone = normalize_phone(entity.get("citizen_whatsapp") or entity.get("citizen_phone"))
        if citizen_phone:
            out.append(Notification(
                entity_type=entity_type, entity_id=entity_id, action=event.action,
                recipient_name=entity.get("citizen_name"), recipient_phone=citizen_phone,
                message=f"Your {label.lower()} {entity_id}: {text}"))
        if entity.get("assigned_to"):
            out.append(Notification(
                entity_type=entity_type, entity_id=entity_id, action=event.action,
                recipient_id=entity["assigned_to"], channel="email",
                message=f"{label} {entity_id}: {text}"))
    return out


class Notifier:
    def __init__(self, db, timeout: Optional[float] = None):
        self.outbox = db.notification_outbox
        self.timeout = timeout

    def queue(self, notes: List[Notification]) -> List[Notification]:
        """Write *notes* to the outbox; StorageUnavailable propagates."""
        docs = [dict(n.model_dump(), _id=n.id) for n in notes]
        guarded(self.outbox.insert_many, docs, timeout=self.timeout)
        for n in notes:
            logger.info("Queued %s notification for %s (%s) -> %s", n.channel, n.entity_id,
                        n.action, n.recipient_name or n.recipient_id or mask_phone(n.recipient_phone))
        return notes

    def notify(self, entity_type: str, entity_id: str, entity: dict, event) -> List[Notification]:
        """Queue notifications for an event that is already committed.

        Failing to queue is logged and reported as an empty result; the
        committed change it describes stands.
        """
        notes = build_notifications(entity_type, entity_id, entity, event)
        if not notes:
            return []
        try:
            return self.queue(notes)
        except StorageUnavailable as e:
            logger.error("Could not queue %d notification(s) for %s %s: %s",
                         len(notes), entity_id, event.action, e)
            return []
