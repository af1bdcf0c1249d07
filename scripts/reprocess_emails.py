#!/usr/bin/env python3
"""Re-run classification, matching and signal extraction over synced emails.

This script:
1. Resets the selected emails to pending
2. Runs them through the email processor again
3. Re-runs signal extraction (processors and decision execution included)

Usage:
    python -m scripts.reprocess_emails [--status failed] [--email-type rejection] [--limit 100] [--dry-run]
"""
import argparse
import logging
import sys

from sqlalchemy import select

from scripts.bootstrap import get_session, prepare
from src.gmail.email_processor import EmailProcessor
from src.persistence.models import SyncedEmail
from src.signals.jobs import process_signal_extraction

logger = logging.getLogger(__name__)


def select_emails(session, status=None, email_type=None, limit=None) -> list[SyncedEmail]:
    stmt = select(SyncedEmail).order_by(SyncedEmail.email_date.asc())
    if status:
        stmt = stmt.where(SyncedEmail.status == status)
    if email_type:
        stmt = stmt.where(SyncedEmail.email_type == email_type)
    if limit:
        stmt = stmt.limit(limit)
    return list(session.execute(stmt).scalars().all())


def reprocess_emails(status=None, email_type=None, limit=None, skip_extraction=False, dry_run=False) -> dict:
    """Reprocess matching emails; returns counters."""
    logger.info("=" * 60)
    logger.info("Reprocessing synced emails (dry run: %s)", dry_run)
    logger.info("=" * 60)

    stats = {"total": 0, "processed": 0, "failed": 0, "matched": 0, "extracted": 0}

    with get_session() as session:
        emails = select_emails(session, status, email_type, limit)
        stats["total"] = len(emails)
        logger.info("Found %d emails to reprocess", len(emails))

        for email in emails:
            if dry_run:
                logger.info(
                    "[DRY RUN] %s | %s | type=%s status=%s",
                    email.id,
                    (email.subject or "")[:60],
                    email.email_type,
                    email.status,
                )
                continue

            email.status = "pending"
            email.interview_application_id = None
            result = EmailProcessor(session, email).run()
            if not result["success"]:
                stats["failed"] += 1
                session.commit()
                continue
            stats["processed"] += 1
            if email.interview_application_id:
                stats["matched"] += 1
            session.commit()

            if skip_extraction or email.status != "processed":
                continue
            email.extraction_status = "pending"
            session.commit()
            if process_signal_extraction(session, email.id).get("success"):
                stats["extracted"] += 1

    logger.info("Done: %s", stats)
    return stats


def main():
    parser = argparse.ArgumentParser(description="Reprocess synced emails")
    parser.add_argument("--status", help="Only emails with this status (e.g. failed)")
    parser.add_argument("--email-type", help="Only emails of this type (e.g. rejection)")
    parser.add_argument("--limit", type=int, help="Maximum emails to reprocess")
    parser.add_argument("--skip-extraction", action="store_true", help="Don't re-run signal extraction")
    parser.add_argument("--dry-run", action="store_true", help="List emails without changing anything")
    args = parser.parse_args()

    prepare(log_to_file=False)
    stats = reprocess_emails(
        status=args.status,
        email_type=args.email_type,
        limit=args.limit,
        skip_extraction=args.skip_extraction,
        dry_run=args.dry_run,
    )
    return 1 if stats["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
