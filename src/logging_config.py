"""Process-wide logging for the scheduler, webhook server and scripts."""
import logging
import logging.handlers
from pathlib import Path
from typing import Iterable, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# Chatty client libraries used by sync, scraping, LLM calls and webhooks
QUIET_LOGGERS = (
    "urllib3",
    "aiohttp",
    "sqlalchemy",
    "apscheduler",
    "googleapiclient",
    "google_auth_oauthlib",
    "httpx",
    "openai",
    "anthropic",
    "playwright",
    "uvicorn.access",
)


def _file_handler(log_file: str, formatter: logging.Formatter) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    quiet: Iterable[str] = QUIET_LOGGERS,
) -> logging.Logger:
    """Configure the root logger once per process.

    Args:
        level: Root log level name
        log_file: Optional rotating log file path
        quiet: Logger names capped at WARNING

    Returns:
        The root logger
    """
    root = logging.getLogger()
    if root.handlers:
        return root

    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)
    if log_file:
        root.addHandler(_file_handler(log_file, formatter))

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root
