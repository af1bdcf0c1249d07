#!/usr/bin/env python3
"""Connect a Gmail mailbox for a user via the OAuth install flow.

Usage:
    python -m scripts.setup_gmail [--user-email you@example.com] [--name "Your Name"]
"""
import argparse
import logging
import sys

from sqlalchemy import select

from scripts.bootstrap import get_session, prepare, settings
from src.gmail.auth import SCOPES, GmailAuth
from src.gmail.client import GmailClient
from src.gmail.exceptions import GmailAuthError
from src.persistence.models import ConnectedAccount, User

logger = logging.getLogger(__name__)


def connect_account(session, credentials, user_email=None, name=None) -> ConnectedAccount:
    """Create or refresh the ConnectedAccount (and its User) for fresh credentials."""
    mailbox = GmailClient(credentials).profile_email().lower()
    owner_email = (user_email or mailbox).lower()

    user = session.execute(select(User).where(User.email == owner_email)).scalar_one_or_none()
    if user is None:
        user = User(email=owner_email, name=name)
        session.add(user)
        session.flush()
        logger.info("Created user %s", owner_email)

    account = session.execute(
        select(ConnectedAccount).where(
            ConnectedAccount.user_id == user.id,
            ConnectedAccount.provider == "google_oauth2",
            ConnectedAccount.uid == mailbox,
        )
    ).scalar_one_or_none()
    if account is None:
        account = ConnectedAccount(user_id=user.id, provider="google_oauth2", uid=mailbox)
        session.add(account)

    account.email = mailbox
    account.access_token = credentials.token
    if credentials.refresh_token:
        account.refresh_token = credentials.refresh_token
    account.expires_at = credentials.expiry
    account.scopes = " ".join(credentials.scopes or SCOPES)
    account.sync_enabled = True
    account.needs_reauth = False
    account.auth_error_at = None
    account.auth_error_message = None
    session.flush()
    return account


def main():
    """Run Gmail OAuth setup."""
    parser = argparse.ArgumentParser(description="Connect a Gmail account")
    parser.add_argument("--user-email", help="Owner account email (defaults to the mailbox address)")
    parser.add_argument("--name", help="Owner display name")
    args = parser.parse_args()

    prepare(log_to_file=False)

    print("Gmail OAuth Setup")
    print("=" * 50)
    print()
    print("A browser window will open for authentication.")

    try:
        credentials = GmailAuth().run_install_flow()
    except GmailAuthError as e:
        logger.error("%s", e)
        print()
        print("To set up Gmail integration:")
        print("1. Go to https://console.cloud.google.com")
        print("2. Enable the Gmail API")
        print("3. Create an OAuth 2.0 Client ID ('Desktop app')")
        print("4. Save the JSON as %s" % settings.gmail_credentials_file)
        return 1

    with get_session() as session:
        account = connect_account(session, credentials, args.user_email, args.name)
        logger.info("Connected %s (account %s)", account.email, account.id)

    print()
    print("Gmail is connected. Run `python -m scripts.run_sync` to sync now.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
