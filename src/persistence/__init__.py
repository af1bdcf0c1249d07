"""Database persistence layer."""
from .database import get_session, init_db
from .models import (
    Base,
    Company,
    ConnectedAccount,
    InterviewApplication,
    Opportunity,
    ScrapingAttempt,
    SyncedEmail,
    User,
)

__all__ = [
    "Base",
    "User",
    "ConnectedAccount",
    "Company",
    "InterviewApplication",
    "Opportunity",
    "SyncedEmail",
    "ScrapingAttempt",
    "init_db",
    "get_session",
]
