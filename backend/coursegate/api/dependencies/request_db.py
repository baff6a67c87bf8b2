"""Helpers for getting database sessions from request state."""

from typing import Generator

from fastapi import Request
from sqlalchemy.orm import Session

from coursegate.database.session import get_db_session


def get_request_db_session(request: Request) -> Generator[Session, None, None]:
    """
    Reuse a session an outer middleware put on request.state, otherwise
    open one for this request and close it afterwards.
    """
    db = getattr(request.state, "db", None)
    if db is not None:
        yield db
        return

    yield from get_db_session()
