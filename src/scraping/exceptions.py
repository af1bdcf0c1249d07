"""Scraping exceptions for Interview Signals."""


class ScrapingError(Exception):
    """Base exception for scraping errors."""

    pass


class RenderError(ScrapingError):
    """Raised when the headless browser can't render a page."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Rendered fetch failed for {url}: {reason}")
