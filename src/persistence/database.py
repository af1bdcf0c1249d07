"""Engine, session factory and additive schema upgrades."""
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from config.settings import settings
from src.persistence.models import Base

logger = logging.getLogger(__name__)

# Columns added after the first release: table -> {column: DDL type}
ADDED_COLUMNS = {
    "connected_accounts": {
        "needs_reauth": "BOOLEAN NOT NULL DEFAULT FALSE",
        "auth_error_at": "TIMESTAMP",
        "auth_error_message": "VARCHAR",
    },
    "synced_emails": {
        "extraction_status": "VARCHAR",
        "extracted_at": "TIMESTAMP",
    },
}


def _build_engine(url: Optional[str] = None) -> Engine:
    """Engine for SQLite (shared across scheduler threads) or a pooled server database."""
    url = url or settings.database_url
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(url, echo=False, pool_size=5, max_overflow=10, pool_pre_ping=True)


engine = _build_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def add_missing_columns(target: Optional[Engine] = None) -> list[str]:
    """
    ALTER existing tables to add columns listed in ADDED_COLUMNS.

    Tables that don't exist yet are skipped; create_all builds them whole.

    Returns:
        "table.column" for every column added
    """
    target = target or engine
    inspector = inspect(target)
    existing_tables = set(inspector.get_table_names())
    added = []
    with target.begin() as conn:
        for table, columns in ADDED_COLUMNS.items():
            if table not in existing_tables:
                continue
            present = {col["name"] for col in inspector.get_columns(table)}
            for name, ddl in columns.items():
                if name in present:
                    continue
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
                added.append(f"{table}.{name}")
                logger.info("Added %s column to %s", name, table)
    return added


def init_db() -> None:
    """Create missing tables, then upgrade older ones in place."""
    Base.metadata.create_all(bind=engine)
    add_missing_columns()


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Session committed on success, rolled back on error, always closed."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
