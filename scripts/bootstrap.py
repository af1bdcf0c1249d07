"""Shared setup for command-line scripts.

Usage:
    from scripts.bootstrap import get_session, prepare, settings

    prepare()
"""
import sys
from pathlib import Path

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from config.settings import settings
from src.logging_config import setup_logging
from src.persistence.database import get_session, init_db


def prepare(log_to_file: bool = True) -> None:
    """Configure logging from settings and make sure all tables exist."""
    setup_logging(level=settings.log_level, log_file=settings.log_file if log_to_file else None)
    init_db()


__all__ = ["settings", "get_session", "prepare"]
