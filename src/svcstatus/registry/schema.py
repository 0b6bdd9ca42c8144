"""
Persisted layout of the status registry.

One table, ``service_status``, keyed by the instance id. The indexes serve the
two access patterns readers use: equality lookups on ``service_type`` and
``source_id`` (partial, scrapers only) and range scans on ``last_heartbeat``.
"""

import logging
from datetime import timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

Base = declarative_base()

TABLE_NAME = "service_status"


class UTCDateTime(TypeDecorator):
    """Timestamp column that always hands back timezone-aware UTC datetimes.

    SQLite has no timestamp-with-time-zone type, so values are stored there as
    naive UTC and re-tagged on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


StatsJSON = JSON().with_variant(JSONB(), "postgresql")


class ServiceStatusRow(Base):
    """Current state of one service instance."""
    __tablename__ = TABLE_NAME

    id = Column(Text, primary_key=True)  # "scraper:doj", "ocr:worker-1", "server:main"
    service_type = Column(Text, nullable=False)
    source_id = Column(Text, nullable=True)  # scrapers only
    status = Column(Text, nullable=False)
    last_heartbeat = Column(UTCDateTime, nullable=False)
    last_activity = Column(UTCDateTime, nullable=True)
    current_task = Column(Text, nullable=True)

    stats = Column(StatsJSON, nullable=False, default=dict, server_default=text("'{}'"))

    started_at = Column(UTCDateTime, nullable=False)
    host = Column(Text, nullable=True)
    version = Column(Text, nullable=True)

    last_error = Column(Text, nullable=True)
    last_error_at = Column(UTCDateTime, nullable=True)
    error_count = Column(Integer, nullable=False, default=0, server_default=text("0"))

    __table_args__ = (
        Index("idx_service_status_type", "service_type"),
        Index("idx_service_status_heartbeat", "last_heartbeat"),
        Index(
            "idx_service_status_source",
            "source_id",
            postgresql_where=text("source_id IS NOT NULL"),
            sqlite_where=text("source_id IS NOT NULL"),
        ),
    )


service_status = ServiceStatusRow.__table__

COLUMNS = [c.name for c in service_status.columns]


def create_schema(engine: Engine) -> None:
    """Create the table and its indexes if they do not exist yet."""
    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        logger.error("Failed to create %s schema: %s", TABLE_NAME, e)
        raise StoreUnavailable(f"schema creation failed: {e}") from e
    logger.info("Schema for %s is in place", TABLE_NAME)
