"""Pull interview-related mail from a connected Gmail account."""
import logging
from datetime import timedelta
from typing import Optional

from googleapiclient.errors import HttpError
from sqlalchemy.orm import Session

from config.settings import settings
from src.gmail.auth import GmailAuth
from src.gmail.client import GmailClient, build_sync_query
from src.gmail.email_processor import EmailProcessor
from src.gmail.exceptions import TokenExpiredError
from src.persistence.models import ConnectedAccount, SyncedEmail, ensure_aware, utcnow

logger = logging.getLogger(__name__)


class SyncService:
    """Fetches, stores and classifies a connected account's emails."""

    def __init__(
        self,
        session: Session,
        account: ConnectedAccount,
        client: Optional[GmailClient] = None,
        auth: Optional[GmailAuth] = None,
        max_results: Optional[int] = None,
    ):
        """
        Args:
            session: Database session
            account: Connected Gmail account
            client: Pre-built client (tests); built from the account otherwise
            auth: GmailAuth used to build credentials
            max_results: Messages per sync (defaults to settings)
        """
        self.session = session
        self.account = account
        self._client = client
        self.auth = auth or GmailAuth()
        self.max_results = max_results or settings.gmail_sync_max_results

    @property
    def client(self) -> GmailClient:
        if self._client is None:
            self._client = GmailClient(self.auth.credentials_for(self.account))
        return self._client

    def lookback_start(self):
        """Search window start: last sync, bounded by the lookback setting."""
        floor = utcnow() - timedelta(days=settings.gmail_sync_lookback_days)
        last = ensure_aware(self.account.last_synced_at)
        if last and last > floor:
            # Gmail's after: is day-granular; overlap a day to be safe
            return last - timedelta(days=1)
        return floor

    def run(self) -> dict:
        """
        Run one sync.

        Returns:
            Result dict: success, emails_found, emails_new, emails_processed,
            emails_matched, synced_at; or success False with error (and
            needs_reauth for revoked tokens)
        """
        account = self.account
        if account.provider != "google_oauth2":
            return {"success": False, "error": "Account not connected"}
        if not account.sync_enabled:
            return {"success": False, "error": "Sync disabled"}
        if account.needs_reauth:
            return {"success": False, "error": "Reconnect required", "needs_reauth": True}

        try:
            query = build_sync_query(self.lookback_start())
            message_ids = self.client.search_messages(query, max_results=self.max_results)
            messages = self.client.get_messages(message_ids)
            stats = self.store_and_process([m.to_sync_data() for m in messages])

            synced_at = utcnow()
            account.last_synced_at = synced_at

            logger.info(
                "Synced %s: %d found, %d new, %d processed, %d matched",
                account.email,
                len(message_ids),
                stats["new"],
                stats["processed"],
                stats["matched"],
            )
            return {
                "success": True,
                "emails_found": len(message_ids),
                "emails_parsed": len(messages),
                "emails_new": stats["new"],
                "emails_processed": stats["processed"],
                "emails_matched": stats["matched"],
                "synced_at": synced_at,
            }
        except TokenExpiredError as e:
            return {"success": False, "error": str(e), "needs_reauth": True}
        except HttpError as e:
            logger.error("Gmail API error for %s: %s", account.email, e)
            return {"success": False, "error": f"Gmail API error: {e}"}
        except Exception as e:
            logger.exception("Gmail sync error for %s", account.email)
            return {"success": False, "error": f"Sync failed: {e}"}

    def store_and_process(self, parsed_emails: list[dict]) -> dict:
        """Store parsed messages and run pending ones through the processor."""
        stats = {"new": 0, "processed": 0, "matched": 0}
        user = self.account.user

        for email_data in parsed_emails:
            synced, created = SyncedEmail.create_from_gmail_message(
                self.session, user, self.account, email_data
            )
            if created:
                stats["new"] += 1

            if synced.status == "pending":
                result = EmailProcessor(self.session, synced).run()
                if result["success"]:
                    stats["processed"] += 1
                if synced.matched:
                    stats["matched"] += 1
            elif synced.matched:
                stats["matched"] += 1

        self.session.flush()
        return stats
