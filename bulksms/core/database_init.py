"""Database initialization module.

Creates missing tables on app and worker startup. Alembic migrations remain the
source of truth for deployed databases; this keeps local SQLite setups usable
without running them.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from bulksms.models import Base

from .db import get_engine

logger = logging.getLogger(__name__)


def init_database_schema() -> None:
    """Create any table declared on ``Base.metadata`` that does not exist yet.

    Raises:
        SQLAlchemyError: If the schema cannot be created.
    """

    try:
        Base.metadata.create_all(bind=get_engine())
    except SQLAlchemyError:
        logger.exception("Failed to initialize database schema")
        raise
    logger.info("Database schema initialized")
