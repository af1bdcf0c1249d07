"""Pytest fixtures for Interview Signals tests."""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.persistence.models import (
    Base,
    Company,
    ConnectedAccount,
    InterviewApplication,
    InterviewRound,
    JobListing,
    SyncedEmail,
    User,
)


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


@pytest.fixture(scope="function")
def test_db():
    """Create a fresh in-memory database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


# =============================================================================
# DOMAIN FIXTURES
# =============================================================================


@pytest.fixture
def user(test_db):
    """A job seeker."""
    user = User(id="user-1", email="seeker@example.com", name="Sam Seeker")
    test_db.add(user)
    test_db.commit()
    return user


@pytest.fixture
def connected_account(test_db, user):
    """A Gmail account connected for the user."""
    account = ConnectedAccount(
        id="account-1",
        user_id=user.id,
        provider="google_oauth2",
        uid="seeker@example.com",
        email="seeker@example.com",
        access_token="access-token",
        refresh_token="refresh-token",
        sync_enabled=True,
    )
    test_db.add(account)
    test_db.commit()
    return account


@pytest.fixture
def company(test_db):
    """A company with a website."""
    company = Company(id="company-1", name="Acme Corp", website="https://www.acme.com")
    test_db.add(company)
    test_db.commit()
    return company


@pytest.fixture
def application(test_db, user, company):
    """An active application in the applied stage."""
    app = InterviewApplication(
        id="app-1",
        user_id=user.id,
        company_id=company.id,
        job_title="Senior Engineer",
        status="active",
        pipeline_stage="applied",
    )
    test_db.add(app)
    test_db.commit()
    return app


@pytest.fixture
def pending_round(test_db, application):
    """A scheduled screening round awaiting a result."""
    round_ = InterviewRound(
        id="round-1",
        interview_application_id=application.id,
        position=1,
        stage="screening",
        scheduled_at=datetime(2026, 2, 3, 15, 0, tzinfo=timezone.utc),
        duration_minutes=30,
        result="pending",
    )
    test_db.add(round_)
    test_db.commit()
    return round_


@pytest.fixture
def email_factory(test_db, user, connected_account):
    """
    Factory fixture to create synced emails.

    Usage:
        email = email_factory(subject="Interview invite", email_type="scheduling")
    """
    counter = {"n": 0}

    def _create(**overrides):
        counter["n"] += 1
        data = {
            "user_id": user.id,
            "connected_account_id": connected_account.id,
            "gmail_id": f"gmail-{counter['n']}",
            "thread_id": f"thread-{counter['n']}",
            "subject": "Your application at Acme Corp",
            "from_email": "recruiter@acme.com",
            "from_name": "Riley Recruiter",
            "email_date": datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=counter["n"]),
            "snippet": "Thanks for applying",
            "body_preview": "Thanks for applying to Acme Corp.",
            "status": "processed",
            "extracted_data": {},
            "meta": {},
        }
        data.update(overrides)
        email = SyncedEmail(**data)
        test_db.add(email)
        test_db.commit()
        return email

    return _create


@pytest.fixture
def job_listing(test_db):
    """A job listing hosted on Greenhouse."""
    listing = JobListing(
        id="listing-1",
        url="https://boards.greenhouse.io/acme/jobs/12345",
    )
    test_db.add(listing)
    test_db.commit()
    return listing


# =============================================================================
# MOCK FIXTURES (For external services)
# =============================================================================


@pytest.fixture
def runner_factory():
    """
    ProviderRunner stand-in returning a canned ``run()`` result.

    Usage:
        factory = runner_factory({"success": True, "parsed": {...}})
    """

    def _factory(result):
        calls = []

        def _build(*args, **kwargs):
            calls.append(kwargs)
            runner = MagicMock()
            runner.run.return_value = result
            return runner

        _build.calls = calls
        return _build

    return _factory
