import uuid

from sqlalchemy import Column, String, Integer, Text, DateTime, Uuid, Index, CheckConstraint, text

from fsm_outbox.database import Base
from fsm_outbox.models.base import BaseModel, JSONDocument


class OutboxEntry(Base, BaseModel):
	__tablename__ = "job_outbox"

	outbox_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
	entity_id = Column(String(255), nullable=False, index=True)
	queue_name = Column(String(100), nullable=False)
	job_data = Column(JSONDocument, nullable=False, default=dict)
	job_options = Column(JSONDocument, nullable=False, default=dict)
	processed_at = Column(DateTime(timezone=True))  # NULL = pending
	attempts = Column(Integer, nullable=False, default=0)
	last_attempt_at = Column(DateTime(timezone=True))
	last_error = Column(Text)

	__table_args__ = (
		CheckConstraint("length(queue_name) > 0", name="ck_job_outbox_queue_name"),
		CheckConstraint("attempts >= 0", name="ck_job_outbox_attempts"),
		Index(
			"idx_job_outbox_unprocessed",
			"created_at",
			postgresql_where=text("processed_at IS NULL"),
			sqlite_where=text("processed_at IS NULL"),
		),
	)
