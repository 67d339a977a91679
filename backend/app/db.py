from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Optional, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, SQLModel, create_engine

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 5


class TransactionConflict(Exception):
    """A document changed between read and write; the whole transaction should be retried."""


def _default_db_url() -> str:
    # Keep data out of git by default.
    data_dir = Path(os.environ.get("SEAT_ALLOCATION_DATA_DIR", Path.cwd() / "data"))
    data_dir.mkdir(parents=True, exist_ok=True)
    db_path = data_dir / "seat_allocation.db"
    return f"sqlite:///{db_path}"


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        url = os.environ.get("SEAT_ALLOCATION_DB_URL") or _default_db_url()
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        _engine = create_engine(url, echo=False, connect_args=connect_args)
    return _engine


def reset_engine() -> None:
    """Drop the cached engine so the next call re-reads the environment."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def init_db() -> None:
    from . import models  # noqa: F401 - ensure models are registered

    SQLModel.metadata.create_all(get_engine())


def get_session() -> Session:
    return Session(get_engine())


def _retryable(e: Exception) -> bool:
    if isinstance(e, (TransactionConflict, IntegrityError)):
        return True
    # sqlite reports a concurrent writer holding the lock this way
    return isinstance(e, OperationalError) and "database is locked" in str(e)


def with_transaction(
    fn: Callable[[Session], T],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    session_factory: Callable[[], Session] = get_session,
) -> T:
    """
    Run fn(session) and commit, retrying the whole callback on write conflicts
    and on a locked sqlite database.

    fn must only stage writes through the session it is given; anything it read
    is re-read on the next attempt. The last conflict is re-raised once attempts
    are exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        with session_factory() as session:
            try:
                result = fn(session)
                session.commit()
                return result
            except (TransactionConflict, IntegrityError, OperationalError) as e:
                session.rollback()
                if attempt == attempts or not _retryable(e):
                    raise
                logger.warning("transaction conflict, retrying attempt=%s/%s error=%s", attempt, attempts, e)
    raise AssertionError("unreachable")
