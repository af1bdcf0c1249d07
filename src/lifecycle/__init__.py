"""Status machines with an append-only transition log."""
from .exceptions import InvalidTransitionError, LifecycleError, UnknownEventError
from .machines import (
    APPLICATION_STAGE,
    APPLICATION_STATUS,
    OPPORTUNITY_STATUS,
    SCRAPING_STATUS,
    application_machine_for,
)
from .state_machine import Event, StateMachine

__all__ = [
    "Event",
    "StateMachine",
    "LifecycleError",
    "InvalidTransitionError",
    "UnknownEventError",
    "OPPORTUNITY_STATUS",
    "APPLICATION_STATUS",
    "APPLICATION_STAGE",
    "SCRAPING_STATUS",
    "application_machine_for",
]
