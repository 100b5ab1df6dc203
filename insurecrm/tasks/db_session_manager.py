"""
Database Session Manager for Celery Tasks

Gives each task its own session and guarantees commit/rollback/close so worker
processes do not leak connections.
"""
import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session

from insurecrm.db.database import SessionLocal

logger = logging.getLogger(__name__)


@contextmanager
def get_celery_db_session() -> Generator[Session, None, None]:
    """
    Usage:
        @shared_task
        def my_task():
            with get_celery_db_session() as db:
                ...
    """
    db = SessionLocal()

    try:
        logger.debug("Created database session for Celery task")
        yield db
        db.commit()

    except Exception as e:
        logger.error(f"Database error in Celery task, rolling back: {e}")
        db.rollback()
        raise

    finally:
        db.close()
        logger.debug("Closed database session for Celery task")
