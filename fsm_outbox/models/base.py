from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, JSON
from sqlalchemy.dialects.postgresql import JSONB


# Opaque structured payloads: JSONB on PostgreSQL, JSON elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


class BaseModel:
	"""Columns shared by every table"""

	created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
