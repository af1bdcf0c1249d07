"""Declarative status machines bound to a model column.

A machine owns one string column on a model (``status``,
``pipeline_stage``). Events list the states they may fire from and the
state they move to; firing an event validates the current state, writes
the new one, runs the optional ``after`` hook and, when a session is
supplied, appends a ``StateTransition`` row.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Union

from sqlalchemy.orm import Session

from src.lifecycle.exceptions import InvalidTransitionError, UnknownEventError
from src.persistence.models import StateTransition

logger = logging.getLogger(__name__)

ANY_STATE = "*"


@dataclass(frozen=True)
class Event:
    """A named transition.

    Attributes:
        name: Event name (e.g. "start_fetch")
        sources: States the event may fire from, or "*" for any state
            other than the target
        target: State after the event
        after: Optional hook called with the record after the state changes
    """

    name: str
    sources: Union[Sequence[str], str]
    target: str
    after: Optional[Callable[[object], None]] = None

    def allowed_from(self, state: Optional[str]) -> bool:
        if self.sources == ANY_STATE:
            return state != self.target
        return state in self.sources


class StateMachine:
    """Status machine for a single column."""

    def __init__(self, column: str, states: Sequence[str], events: Sequence[Event], initial: str):
        if initial not in states:
            raise ValueError(f"Initial state '{initial}' is not one of {list(states)}")
        for event in events:
            if event.target not in states:
                raise ValueError(f"Event '{event.name}' targets unknown state '{event.target}'")
        self.column = column
        self.states = list(states)
        self.initial = initial
        self.events = {event.name: event for event in events}

    def current_state(self, record: object) -> str:
        return getattr(record, self.column, None) or self.initial

    def _event(self, name: str) -> Event:
        try:
            return self.events[name]
        except KeyError:
            raise UnknownEventError(name, self.column) from None

    def can_fire(self, record: object, event: str) -> bool:
        """Whether the event is allowed from the record's current state."""
        if event not in self.events:
            return False
        return self.events[event].allowed_from(self.current_state(record))

    def available_events(self, record: object) -> list[str]:
        """Names of all events that can fire from the current state."""
        state = self.current_state(record)
        return [name for name, event in self.events.items() if event.allowed_from(state)]

    def fire(
        self,
        record: object,
        event: str,
        session: Optional[Session] = None,
        reason: Optional[str] = None,
    ) -> object:
        """Apply an event to the record.

        Args:
            record: Model instance owning the column
            event: Event name
            session: When given, a StateTransition row is added to it
            reason: Free-text reason stored on the transition

        Returns:
            The same record, now in the target state

        Raises:
            UnknownEventError: Event is not defined on this machine
            InvalidTransitionError: Event cannot fire from the current state
        """
        spec = self._event(event)
        from_state = self.current_state(record)
        if not spec.allowed_from(from_state):
            raise InvalidTransitionError(event, from_state, record)

        setattr(record, self.column, spec.target)
        if spec.after is not None:
            spec.after(record)

        if session is not None:
            session.add(
                StateTransition(
                    record_type=type(record).__name__,
                    record_id=str(getattr(record, "id", "")),
                    column=self.column,
                    event=event,
                    from_state=from_state,
                    to_state=spec.target,
                    reason=reason,
                )
            )

        logger.debug(
            "%s %s: %s -> %s via %s",
            type(record).__name__,
            getattr(record, "id", None),
            from_state,
            spec.target,
            event,
        )
        return record
