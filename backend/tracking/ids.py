# Sequential, human-readable identifiers backed by atomic Mongo counters
#
#   counters: {"_id": "<counter name>", "value": <int>, "created_at", "updated_at"}

import logging
import re
from datetime import datetime, timezone
from typing import Dict, NamedTuple, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .errors import IdSpaceExhausted, InvalidCounterName, MalformedExistingId
from .store import guarded

logger = logging.getLogger(__name__)

ID_WIDTH = 8
MAX_SEQUENCE = 10 ** ID_WIDTH - 1
ID_PATTERN = re.compile(r"^(GRV|APT)\d{8}$")

_COUNTER_NAME = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


class Sequence(NamedTuple):
    counter: str
    prefix: str
    collection: str
    id_field: str


SEQUENCES: Dict[str, Sequence] = {
    "grievance": Sequence("grievance", "GRV", "grievances", "grievance_id"),
    "appointment": Sequence("appointment", "APT", "appointments", "appointment_id"),
}


def format_id(prefix: str, value: int) -> str:
    """Render *value* as ``<prefix><8 zero-padded digits>``, e.g. ``GRV00000001``."""
    if value < 0:
        raise ValueError(f"sequence value must be non-negative, got {value}")
    if value > MAX_SEQUENCE:
        raise IdSpaceExhausted(prefix, value)
    return f"{prefix}{value:0{ID_WIDTH}d}"


def parse_id(prefix: str, value) -> Optional[int]:
    """Numeric suffix of a well-formed ID for *prefix*, or None."""
    if not isinstance(value, str):
        return None
    m = re.match(rf"^{re.escape(prefix)}(\d+)$", value)
    if not m:
        return None
    n = int(m.group(1))
    return n if n <= MAX_SEQUENCE else None


def validate_counter_name(name) -> str:
    if not isinstance(name, str) or not _COUNTER_NAME.match(name):
        raise InvalidCounterName(f"invalid counter name: {name!r}")
    return name


class SequenceAllocator:
    """Hands out the next value of a named counter.

    Every call is a single find-and-modify against the ``counters``
    collection; the server linearizes concurrent callers, so no two callers
    ever receive the same value and no value is skipped. Nothing is cached
    in process.
    """

    def __init__(self, db, timeout: Optional[float] = None):
        self.db = db
        self.counters = db.counters
        self.timeout = timeout

    def _increment(self, name: str, limit: int, timeout: Optional[float]) -> dict:
        # Only a counter still below the limit matches; one at the limit makes
        # the upsert collide on _id instead of moving past it.
        now = datetime.now(timezone.utc)
        return guarded(
            self.counters.find_one_and_update,
            {"_id": name, "value": {"$lt": limit}},
            {"$inc": {"value": 1}, "$set": {"updated_at": now},
             "$setOnInsert": {"created_at": now}},
            upsert=True, return_document=ReturnDocument.AFTER,
            timeout=timeout)

    def allocate(self, counter_name: str, *, timeout: Optional[float] = None,
                 limit: int = MAX_SEQUENCE) -> int:
        """Next value of *counter_name*; the counter is left unchanged on any error."""
        name = validate_counter_name(counter_name)
        timeout = self.timeout if timeout is None else timeout
        try:
            return self._increment(name, limit, timeout)["value"]
        except DuplicateKeyError:
            current = self.current_value(name)
            if current is not None and current >= limit:
                raise IdSpaceExhausted(name, current + 1)
        # Two first-ever upserts raced; the counter now exists below the limit.
        try:
            return self._increment(name, limit, timeout)["value"]
        except DuplicateKeyError:
            raise IdSpaceExhausted(name, limit + 1)

    def next_id(self, entity_type: str, *, timeout: Optional[float] = None) -> str:
        seq = SEQUENCES.get(entity_type)
        if seq is None:
            raise InvalidCounterName(f"no id sequence for entity type {entity_type!r}")
        value = self.allocate(seq.counter, timeout=timeout)
        return format_id(seq.prefix, value)

    def current_value(self, counter_name: str) -> Optional[int]:
        name = validate_counter_name(counter_name)
        doc = guarded(self.counters.find_one, {"_id": name}, timeout=self.timeout)
        return doc["value"] if doc else None

    # ------------------------------------------------------------------
    # Bootstrap from pre-existing data
    # ------------------------------------------------------------------
    def scan_existing_max_id(self, collection, id_field: str, prefix: str) -> int:
        # Fixed width makes string order numeric order, so the highest
        # well-formed ID is the first one in descending order.
        well_formed = f"^{re.escape(prefix)}\\d{{{ID_WIDTH}}}$"
        top = guarded(collection.find_one, {id_field: {"$regex": well_formed}},
                      {id_field: 1}, sort=[(id_field, -1)], timeout=self.timeout)
        odd = guarded(lambda: list(collection.find(
            {id_field: {"$not": {"$regex": well_formed}}}, {id_field: 1})),
            timeout=self.timeout)
        for doc in odd:
            raw = doc.get(id_field)
            if raw is None:
                logger.warning("Record %s has no %s, skipped", doc.get("_id"), id_field)
            else:
                logger.warning("%s", MalformedExistingId(doc.get("_id"), raw))
        return parse_id(prefix, top[id_field]) if top else 0

    def initialize_counter(self, counter_name: str, collection, id_field: str, prefix: str) -> int:
        """Seed *counter_name* from the highest ID already stored in *collection*.

        No-op when the counter exists. Soft-deleted records are scanned too,
        so their IDs are never reissued. Returns the counter value afterwards.
        """
        name = validate_counter_name(counter_name)
        existing = self.current_value(name)
        if existing is not None:
            logger.info("Counter %s already initialized at %d", name, existing)
            return existing
        highest = self.scan_existing_max_id(collection, id_field, prefix)
        now = datetime.now(timezone.utc)
        try:
            guarded(self.counters.update_one, {"_id": name},
                    {"$setOnInsert": {"value": highest, "created_at": now, "updated_at": now}},
                    upsert=True, timeout=self.timeout)
        except DuplicateKeyError:
            logger.info("Counter %s created concurrently, leaving it as is", name)
        value = self.current_value(name)
        logger.info("Initialized %s counter at %d", name, value)
        return value

    def initialize_counters(self) -> Dict[str, int]:
        return {
            seq.counter: self.initialize_counter(
                seq.counter, self.db[seq.collection], seq.id_field, seq.prefix)
            for seq in SEQUENCES.values()
        }
