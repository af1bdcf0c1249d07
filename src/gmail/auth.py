"""Gmail OAuth2 authentication for connected accounts."""
import json
import logging
from pathlib import Path
from typing import Optional

import requests
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from config.settings import settings
from src.gmail.exceptions import GmailAuthError, TokenExpiredError
from src.persistence.models import ConnectedAccount, utcnow

logger = logging.getLogger(__name__)

# Gmail API scopes
SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
    "openid",
]

TOKEN_URI = "https://oauth2.googleapis.com/token"


class GmailAuth:
    """Build and refresh Gmail credentials for a ConnectedAccount."""

    def __init__(self, credentials_file: Optional[str] = None):
        """
        Initialize Gmail authentication.

        Args:
            credentials_file: Path to OAuth client secrets JSON file
                (defaults to settings.gmail_credentials_file)
        """
        self.credentials_file = Path(credentials_file or settings.gmail_credentials_file)
        self._client_config: Optional[dict] = None

    def client_config(self) -> dict:
        """Client id/secret from the secrets file ("installed" or "web" section)."""
        if self._client_config is None:
            if not self.credentials_file.exists():
                raise GmailAuthError(f"credentials file not found: {self.credentials_file}")
            data = json.loads(self.credentials_file.read_text())
            self._client_config = data.get("installed") or data.get("web") or {}
        return self._client_config

    def credentials_for(self, account: ConnectedAccount) -> Credentials:
        """
        Get valid credentials for an account, refreshing if expired.

        A refreshed access token is written back to the account.

        Args:
            account: Connected Gmail account

        Returns:
            Valid Credentials

        Raises:
            TokenExpiredError: Refresh failed; account is flagged needs_reauth
        """
        config = self.client_config()
        credentials = Credentials(
            token=account.access_token,
            refresh_token=account.refresh_token,
            token_uri=config.get("token_uri", TOKEN_URI),
            client_id=config.get("client_id"),
            client_secret=config.get("client_secret"),
            scopes=(account.scopes or " ".join(SCOPES)).split(),
        )
        # google-auth compares expiry against a naive UTC datetime
        if account.expires_at:
            credentials.expiry = account.expires_at.replace(tzinfo=None)

        if credentials.valid:
            return credentials

        try:
            credentials.refresh(Request())
        except RefreshError as e:
            logger.warning("Token refresh failed for %s: %s", account.email, e)
            account.mark_needs_reauth(str(e))
            raise TokenExpiredError(account.email or account.uid) from e

        account.access_token = credentials.token
        account.expires_at = credentials.expiry
        account.updated_at = utcnow()
        logger.debug("Refreshed access token for %s", account.email)
        return credentials

    def run_install_flow(self) -> Credentials:
        """Run the local-server OAuth flow (used by the setup script)."""
        if not self.credentials_file.exists():
            raise GmailAuthError(
                f"credentials file not found: {self.credentials_file}. "
                "Download OAuth credentials from Google Cloud Console"
            )
        flow = InstalledAppFlow.from_client_secrets_file(str(self.credentials_file), SCOPES)
        return flow.run_local_server(port=0)

    @staticmethod
    def revoke(account: ConnectedAccount) -> bool:
        """Revoke the account's token with Google and disable sync."""
        token = account.refresh_token or account.access_token
        if token:
            try:
                response = requests.post(
                    "https://oauth2.googleapis.com/revoke",
                    params={"token": token},
                    headers={"content-type": "application/x-www-form-urlencoded"},
                    timeout=10,
                )
            except requests.RequestException as e:
                logger.warning("Revoke failed for %s: %s", account.email, e)
                return False
            if response.status_code != 200:
                logger.warning("Revoke returned %s for %s", response.status_code, account.email)
        account.access_token = None
        account.refresh_token = None
        account.sync_enabled = False
        return True
