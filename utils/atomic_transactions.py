"""Atomic transaction utilities for trade transitions and trust profile updates"""

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    With no session, one is opened from `session_factory` (default: database.SessionLocal),
    committed on success, rolled back on any exception and closed.

    With a provided session, nesting depth is tracked on the session and only the
    outermost block commits, so a trade status change and the trust profile updates
    it triggers land in the same commit.
    """
    if session is None:
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        session = session_factory()
        try:
            logger.debug("Created new session for atomic transaction")
            yield session
            session.commit()
            logger.debug("Atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.error(f"Transaction rolled back due to error: {type(e).__name__}: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, "_atomic_transaction_depth", 0)
    try:
        setattr(session, "_atomic_transaction_depth", transaction_depth + 1)
        if transaction_depth > 0:
            logger.debug(f"Nested transaction detected (depth: {transaction_depth + 1})")

        yield session

        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost transaction committed successfully")
    except Exception as e:
        # Always rollback on error, regardless of nesting
        session.rollback()
        logger.error(f"Transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, "_atomic_transaction_depth", 1)
        setattr(session, "_atomic_transaction_depth", max(0, current_depth - 1))
