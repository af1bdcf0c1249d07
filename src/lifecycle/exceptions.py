"""State machine exceptions for Interview Signals."""


class LifecycleError(Exception):
    """Base exception for state machine errors."""

    pass


class UnknownEventError(LifecycleError):
    """Raised when firing an event the machine does not define."""

    def __init__(self, event: str, column: str):
        self.event = event
        self.column = column
        super().__init__(f"Unknown event '{event}' for {column}")


class InvalidTransitionError(LifecycleError):
    """Raised when an event is not allowed from the record's current state."""

    def __init__(self, event: str, from_state: str, record: object):
        self.event = event
        self.from_state = from_state
        self.record = record
        super().__init__(
            f"Event '{event}' cannot transition {type(record).__name__} from state '{from_state}'"
        )
