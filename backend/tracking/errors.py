# Error taxonomy for ID allocation, timelines and entity workflows


class TrackingError(Exception):
    """Base class for every error raised by the tracking package."""


class StorageUnavailable(TrackingError):
    """Backing store unreachable or the write could not be confirmed."""


class StorageTimeout(StorageUnavailable):
    """The caller's timeout expired before the store answered."""


class InvalidCounterName(TrackingError, ValueError):
    pass


class InvalidAction(TrackingError, ValueError):
    pass


class InvalidEventDetails(InvalidAction):
    pass


class MalformedExistingId(TrackingError):
    """An existing record carries an ID that does not match its entity pattern.

    Only raised internally during the counter bootstrap scan, where it is
    logged and the record skipped.
    """

    def __init__(self, record_id, value):
        super().__init__(f"record {record_id!r} has malformed id {value!r}")
        self.record_id = record_id
        self.value = value


class IdSpaceExhausted(TrackingError):
    def __init__(self, prefix: str, value: int):
        super().__init__(f"{prefix} sequence value {value} exceeds the 8-digit id space")
        self.prefix = prefix
        self.value = value


class InvalidTransition(TrackingError):
    def __init__(self, kind: str, from_status: str, to_status: str):
        super().__init__(f"{kind} cannot move from {from_status} to {to_status}")
        self.kind = kind
        self.from_status = from_status
        self.to_status = to_status


class ConcurrentModification(TrackingError):
    def __init__(self, entity_id: str, expected_version: int):
        super().__init__(
            f"{entity_id} was modified by another request (expected version {expected_version})")
        self.entity_id = entity_id
        self.expected_version = expected_version


class EntityNotFound(TrackingError, LookupError):
    pass
