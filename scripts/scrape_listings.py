#!/usr/bin/env python3
"""Scrape job listings once, then exit.

Usage:
    python -m scripts.scrape_listings [--url URL] [--limit N]
"""
import argparse
import asyncio
import logging
import sys

from sqlalchemy import select

from scripts.bootstrap import get_session, prepare
from src.persistence.models import JobListing
from src.scraping.jobs import scrape_job_listing, scrape_pending_listings

logger = logging.getLogger(__name__)


async def scrape_url(url: str) -> bool:
    """Scrape one URL, creating its listing when it doesn't exist yet."""
    with get_session() as session:
        listing = session.execute(select(JobListing).where(JobListing.url == url)).scalars().first()
        if listing is None:
            listing = JobListing(url=url)
            session.add(listing)
            session.commit()
        return await scrape_job_listing(session, listing)


def main():
    parser = argparse.ArgumentParser(description="One-off job listing scrape")
    parser.add_argument("--url", help="Scrape this URL instead of the pending listings")
    parser.add_argument("--limit", type=int, default=10, help="Max pending listings to scrape")
    args = parser.parse_args()

    prepare()

    if args.url:
        success = asyncio.run(scrape_url(args.url))
        logger.info("%s: %s", args.url, "extracted" if success else "failed")
        return 0 if success else 1

    async def _pending():
        with get_session() as session:
            return await scrape_pending_listings(session, limit=args.limit)

    count = asyncio.run(_pending())
    logger.info("Scraped %d pending listings", count)
    return 0


if __name__ == "__main__":
    sys.exit(main())
