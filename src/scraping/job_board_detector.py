"""Detect the job board / ATS behind a job listing URL."""
import re
from typing import Optional
from urllib.parse import urlparse

API_SUPPORTED_BOARDS = ("greenhouse", "lever")
LIMITED_EXTRACTION_BOARDS = ("linkedin", "indeed", "glassdoor")

# (board, host fragments, url fragments), checked in order
BOARD_PATTERNS = [
    ("greenhouse", ("greenhouse.io",), ("boards.greenhouse.io", "gh_jid=")),
    ("lever", ("lever.co",), ("jobs.lever.co",)),
    ("linkedin", ("linkedin.com",), ()),
    ("indeed", ("indeed.com",), ()),
    ("glassdoor", ("glassdoor.com",), ()),
    ("workable", ("workable.com",), ("apply.workable.com",)),
    ("jobvite", ("jobvite.com",), ()),
    ("icims", ("icims.com",), ()),
    ("smartrecruiters", ("smartrecruiters.com",), ()),
    ("bamboohr", ("bamboohr.com",), ()),
    ("ashbyhq", ("ashbyhq.com",), ()),
]

COMPANY_SLUG_PATTERNS = {
    "greenhouse": re.compile(r"(?:boards|job-boards)\.greenhouse\.io/([^/?#]+)"),
    "lever": re.compile(r"jobs\.lever\.co/([^/?#]+)"),
    "workable": re.compile(r"apply\.workable\.com/([^/?#]+)"),
}

JOB_ID_PATTERNS = [
    re.compile(r"/jobs?/(\d+)"),
    re.compile(r"/positions?/(\d+)"),
    re.compile(r"/careers?/(\d+)"),
    re.compile(r"/job/([^/?]+)"),
    re.compile(r"/position/([^/?]+)"),
    re.compile(r"job_id=([^&]+)"),
    re.compile(r"gh_jid=([^&]+)"),
]

LINKEDIN_VIEW_RE = re.compile(r"/jobs/view/(\d+)")
LINKEDIN_PARAM_RE = re.compile(r"currentJobId=(\d+)")


class JobBoardDetector:
    """
    Classify a job URL by board and pull out identifiers.

    Example:
        >>> JobBoardDetector("https://boards.greenhouse.io/acme/jobs/123").detect()
        'greenhouse'
    """

    def __init__(self, url: str):
        self.url = url or ""
        self.host = (urlparse(self.url).hostname or "").lower()
        self._board: Optional[str] = None

    def detect(self) -> str:
        if self._board is None:
            self._board = self._detect()
        return self._board

    def _detect(self) -> str:
        for board, hosts, fragments in BOARD_PATTERNS:
            if any(h in self.host for h in hosts) or any(f in self.url for f in fragments):
                return board
        return "unknown"

    @property
    def api_supported(self) -> bool:
        return self.detect() in API_SUPPORTED_BOARDS

    @property
    def limited_extraction(self) -> bool:
        """Boards that need auth or heavy JS and usually block scraping."""
        return self.detect() in LIMITED_EXTRACTION_BOARDS

    @property
    def company_slug(self) -> Optional[str]:
        pattern = COMPANY_SLUG_PATTERNS.get(self.detect())
        if pattern is None:
            return None
        match = pattern.search(self.url)
        return match.group(1) if match else None

    @property
    def job_id(self) -> Optional[str]:
        board = self.detect()
        if board == "lever":
            segments = [s for s in urlparse(self.url).path.split("/") if s]
            if len(segments) >= 2:
                return segments[1]
        if board == "linkedin":
            return self._linkedin_job_id()
        for pattern in JOB_ID_PATTERNS:
            match = pattern.search(self.url)
            if match:
                return match.group(1)
        return None

    @property
    def canonical_url(self) -> str:
        """Normalized URL; LinkedIn search/collection links collapse to /jobs/view/<id>."""
        if self.detect() == "linkedin":
            job_id = self._linkedin_job_id()
            if job_id:
                return f"https://www.linkedin.com/jobs/view/{job_id}"
        return self.url

    def _linkedin_job_id(self) -> Optional[str]:
        match = LINKEDIN_VIEW_RE.search(self.url) or LINKEDIN_PARAM_RE.search(self.url)
        return match.group(1) if match else None
