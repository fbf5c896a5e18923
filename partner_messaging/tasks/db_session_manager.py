"""
Database session management for Celery tasks.

Each task gets its own session that is committed on success, rolled back on
error and always closed, so worker processes never leak connections.
"""
import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session

from partner_messaging.db.database import SessionLocal

logger = logging.getLogger(__name__)


@contextmanager
def get_celery_db_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions in Celery tasks.

    Usage:
        with get_celery_db_session() as db:
            services = factory.build(db)
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
