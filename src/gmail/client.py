"""Gmail API client."""
import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

# Phrases that make an inbox email worth syncing
INTERVIEW_KEYWORDS = [
    "interview",
    "interviewing",
    "phone screen",
    "technical interview",
    "coding challenge",
    "assessment",
    "hiring",
    "application status",
    "job application",
    "thank you for applying",
    "next steps",
    "schedule a call",
    "meet the team",
    "offer letter",
    "job offer",
    "congratulations",
    "we regret",
    "unfortunately",
    "position has been filled",
]

# Applicant tracking systems that send on behalf of employers
RECRUITER_DOMAINS = [
    "greenhouse.io",
    "lever.co",
    "workday.com",
    "icims.com",
    "taleo.net",
    "jobvite.com",
    "smartrecruiters.com",
    "ashbyhq.com",
    "bamboohr.com",
]


def build_sync_query(after: datetime) -> str:
    """Gmail search query for interview-related inbox mail since ``after``."""
    keyword_query = " OR ".join(f'"{kw}"' for kw in INTERVIEW_KEYWORDS)
    domain_query = " OR ".join(f"from:{domain}" for domain in RECRUITER_DOMAINS)
    return (
        f"after:{after.strftime('%Y/%m/%d')} in:inbox -in:spam -in:trash "
        f"({keyword_query} OR {domain_query})"
    )


def html_to_text(html: str) -> str:
    """Crude tag strip with whitespace squashed."""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", " ", html, flags=re.S | re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"&nbsp;", " ", text)
    return re.sub(r"\s+", " ", text).strip()


@dataclass
class EmailMessage:
    """Parsed email message."""

    id: str
    thread_id: str
    subject: str
    from_address: str
    from_name: str
    to_address: str
    date: Optional[datetime]
    body_text: str
    body_html: Optional[str] = None
    snippet: str = ""
    labels: list[str] = field(default_factory=list)

    @property
    def from_header(self) -> str:
        return f"{self.from_name} <{self.from_address}>" if self.from_name else self.from_address

    def body_preview(self, limit: int = 500) -> str:
        """Plain body (or stripped HTML, or snippet) squashed and truncated."""
        text = self.body_text or (html_to_text(self.body_html) if self.body_html else "") or self.snippet
        text = re.sub(r"\s+", " ", text or "").strip()
        if len(text) > limit:
            text = text[: limit - 3] + "..."
        return text

    def to_sync_data(self) -> dict:
        """Field mapping consumed by SyncedEmail.create_from_gmail_message."""
        return {
            "gmail_id": self.id,
            "thread_id": self.thread_id,
            "subject": self.subject,
            "from_email": self.from_address.strip().lower(),
            "from_name": self.from_name or None,
            "email_date": self.date,
            "snippet": self.snippet,
            "body_preview": self.body_preview(),
            "body_html": self.body_html,
            "labels": self.labels,
        }


class GmailClient:
    """Gmail API client for fetching emails."""

    def __init__(self, credentials: Credentials):
        """
        Initialize Gmail client.

        Args:
            credentials: Valid OAuth credentials (see GmailAuth.credentials_for)
        """
        self.credentials = credentials
        self._service = None

    def _get_service(self):
        """Get or create Gmail API service."""
        if self._service is None:
            self._service = build("gmail", "v1", credentials=self.credentials, cache_discovery=False)
        return self._service

    def profile_email(self) -> str:
        """Mailbox address of the authenticated user."""
        profile = self._get_service().users().getProfile(userId="me").execute()
        return profile["emailAddress"]

    def search_messages(self, query: str, max_results: int = 100) -> list[str]:
        """
        Search for messages matching query.

        Args:
            query: Gmail search query (same syntax as Gmail search)
            max_results: Maximum number of message IDs to return

        Returns:
            List of message IDs

        Raises:
            HttpError: Gmail API failure
        """
        service = self._get_service()

        message_ids = []
        page_token = None

        while len(message_ids) < max_results:
            result = (
                service.users()
                .messages()
                .list(
                    userId="me",
                    q=query,
                    maxResults=min(100, max_results - len(message_ids)),
                    pageToken=page_token,
                )
                .execute()
            )

            messages = result.get("messages", [])
            message_ids.extend(msg["id"] for msg in messages)

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return message_ids[:max_results]

    def get_message(self, message_id: str) -> Optional[EmailMessage]:
        """
        Get full message details.

        Args:
            message_id: Gmail message ID

        Returns:
            EmailMessage or None if it could not be fetched or parsed
        """
        service = self._get_service()

        try:
            result = (
                service.users()
                .messages()
                .get(userId="me", id=message_id, format="full")
                .execute()
            )
        except HttpError as e:
            logger.error("Gmail get message %s error: %s", message_id, e)
            return None

        try:
            return self.parse_message(result)
        except (KeyError, ValueError) as e:
            logger.warning("Failed to parse email %s: %s", message_id, e)
            return None

    def get_messages(self, message_ids: list[str]) -> list[EmailMessage]:
        """Fetch several messages, skipping ones that fail."""
        messages = []
        for msg_id in message_ids:
            msg = self.get_message(msg_id)
            if msg:
                messages.append(msg)
        return messages

    @classmethod
    def parse_message(cls, data: dict) -> EmailMessage:
        """Parse raw Gmail API response into EmailMessage."""
        payload = data.get("payload", {})
        headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}

        # Parse from address and name
        from_header = headers.get("from", "")
        from_name = ""
        from_address = from_header
        if "<" in from_header:
            from_name = from_header.split("<")[0].strip().strip('"')
            from_address = from_header.split("<")[1].rstrip(">")

        date = None
        if headers.get("date"):
            try:
                date = parsedate_to_datetime(headers["date"])
            except (TypeError, ValueError):
                date = None

        body_text, body_html = cls.extract_body(payload)

        return EmailMessage(
            id=data["id"],
            thread_id=data.get("threadId", ""),
            subject=headers.get("subject", ""),
            from_address=from_address.strip(),
            from_name=from_name,
            to_address=headers.get("to", ""),
            date=date,
            body_text=body_text,
            body_html=body_html,
            snippet=data.get("snippet", ""),
            labels=data.get("labelIds", []),
        )

    @staticmethod
    def extract_body(payload: dict) -> tuple[str, Optional[str]]:
        """Extract text and HTML body from message payload."""
        body_text = ""
        body_html = None

        def extract_parts(part):
            nonlocal body_text, body_html

            mime_type = part.get("mimeType", "")
            data = part.get("body", {}).get("data")

            if data:
                try:
                    decoded = base64.urlsafe_b64decode(data).decode("utf-8", errors="ignore")
                except (binascii.Error, ValueError):
                    decoded = ""

                if mime_type == "text/plain" and not body_text:
                    body_text = decoded
                elif mime_type == "text/html" and body_html is None:
                    body_html = decoded

            for sub_part in part.get("parts", []):
                extract_parts(sub_part)

        extract_parts(payload)

        # If no plain text, fall back to the HTML part
        if not body_text and body_html:
            body_text = html_to_text(body_html)

        return body_text, body_html
