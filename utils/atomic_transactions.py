"""Atomic transaction utilities for escrow and reconciliation writes"""

import logging
import time
from contextlib import contextmanager
from typing import Callable, Generator, Optional, TypeVar
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import OperationalError
from database import SessionLocal, handle_database_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[sessionmaker] = None,
) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    With no session, a new one is created from ``session_factory`` and committed on
    exit. A provided session is committed only by the outermost block so nested
    helpers can share one transaction.
    """
    if session is None:
        session = (session_factory or SessionLocal)()
        try:
            yield session
            session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.error(f"Sync transaction rolled back due to error: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)
        if transaction_depth > 0:
            logger.debug(f"Nested sync transaction detected (depth: {transaction_depth + 1})")

        yield session

        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")
    except Exception as e:
        session.rollback()
        logger.error(f"Sync transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def run_atomic(
    operation: Callable[[Session], T],
    session_factory: Optional[sessionmaker] = None,
    max_retries: int = 2,
    retry_delay: float = 1.0,
) -> T:
    """
    Run ``operation(session)`` in its own transaction.

    Transient storage errors (see ``handle_database_error``) are retried up to
    ``max_retries`` times; anything else propagates after rollback.
    """
    last_error: Optional[Exception] = None
    for attempt in range(max_retries + 1):
        try:
            with atomic_transaction(session_factory=session_factory) as session:
                return operation(session)
        except OperationalError as e:
            last_error = e
            if attempt < max_retries and handle_database_error(e):
                logger.info(f"🔄 Retrying atomic transaction (attempt {attempt + 2}/{max_retries + 1})...")
                time.sleep(retry_delay)
                continue
            raise

    # Unreachable: the loop either returns or raises
    raise last_error  # type: ignore[misc]
