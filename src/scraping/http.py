"""aiohttp helpers with retry on transient failures."""
import asyncio
import logging
import random
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


def _backoff(attempt: int) -> float:
    return (2 ** attempt) + random.uniform(0, 1)


async def get_text(
    session: aiohttp.ClientSession,
    url: str,
    *,
    retries: int = 3,
    **kwargs,
) -> tuple[Optional[int], Optional[str]]:
    """GET a page, retrying 429, 5xx, timeouts and connection errors.

    Returns:
        (status, body); body is None for non-2xx responses and status is
        None when no response was received
    """
    status = None
    last_error = None
    for attempt in range(retries):
        try:
            async with session.get(url, **kwargs) as resp:
                status = resp.status
                if resp.status == 429 or resp.status >= 500:
                    if attempt < retries - 1:
                        wait = _backoff(attempt)
                        logger.warning(
                            "HTTP %d from %s, retrying in %.1fs (attempt %d/%d)",
                            resp.status, url, wait, attempt + 1, retries,
                        )
                        await asyncio.sleep(wait)
                    continue
                if not 200 <= resp.status < 300:
                    logger.debug("HTTP %d from %s", resp.status, url)
                    return resp.status, None
                return resp.status, await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            last_error = e
            if attempt < retries - 1:
                wait = _backoff(attempt)
                logger.warning(
                    "Request to %s failed: %s, retrying in %.1fs (attempt %d/%d)",
                    url, e, wait, attempt + 1, retries,
                )
                await asyncio.sleep(wait)

    if last_error:
        logger.error("All %d retries failed for %s: %s", retries, url, last_error)
    return status, None


async def get_json(
    session: aiohttp.ClientSession,
    url: str,
    *,
    retries: int = 3,
    **kwargs,
) -> dict | list | None:
    """GET request returning parsed JSON, or None on any failure."""
    last_error = None
    for attempt in range(retries):
        try:
            async with session.get(url, **kwargs) as resp:
                if resp.status == 429 or resp.status >= 500:
                    wait = _backoff(attempt)
                    logger.warning(
                        "HTTP %d from %s, retrying in %.1fs (attempt %d/%d)",
                        resp.status, url, wait, attempt + 1, retries,
                    )
                    await asyncio.sleep(wait)
                    continue
                if resp.status != 200:
                    logger.debug("HTTP %d from %s", resp.status, url)
                    return None
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            last_error = e
            if attempt < retries - 1:
                wait = _backoff(attempt)
                logger.warning(
                    "Request to %s failed: %s, retrying in %.1fs (attempt %d/%d)",
                    url, e, wait, attempt + 1, retries,
                )
                await asyncio.sleep(wait)

    if last_error:
        logger.error("All %d retries failed for %s: %s", retries, url, last_error)
    return None
