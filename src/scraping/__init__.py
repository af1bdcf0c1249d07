"""Job listing scraping: detection, fetching, extraction and retries."""
from .exceptions import RenderError, ScrapingError
from .job_board_detector import JobBoardDetector
from .orchestrator import ScrapingOrchestrator
from .retry_service import RetryService

__all__ = [
    "ScrapingError",
    "RenderError",
    "JobBoardDetector",
    "ScrapingOrchestrator",
    "RetryService",
]
