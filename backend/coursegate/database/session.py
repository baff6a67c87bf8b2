"""
Engine and session factory.

Routes get a request-scoped session through get_db_session; workers build
their own with create_session_factory so each cron run owns its connection.
"""

import logging
from functools import lru_cache
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from coursegate.config import get_settings, normalize_database_url

logger = logging.getLogger(__name__)


def create_session_factory(database_url: Optional[str] = None) -> sessionmaker:
    url = normalize_database_url(database_url) or get_settings().database_url
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")
    engine = create_engine(url, pool_pre_ping=True)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@lru_cache(maxsize=1)
def _default_factory() -> sessionmaker:
    return create_session_factory()


def get_engine() -> Engine:
    return _default_factory().kw["bind"]


def get_db_session_sync() -> Generator[Session, None, None]:
    """Yield a session and always close it."""
    db = _default_factory()()
    try:
        yield db
    finally:
        db.close()


def get_db_session() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request, rolled back on error."""
    db = _default_factory()()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
