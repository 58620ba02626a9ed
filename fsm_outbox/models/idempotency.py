from sqlalchemy import Column, String, DateTime

from fsm_outbox.database import Base
from fsm_outbox.models.base import BaseModel, JSONDocument


class IdempotencyKey(Base, BaseModel):
	"""Snapshot of the first result produced for an idempotency key"""
	__tablename__ = "idempotency_keys"

	idempotency_key = Column(String(255), primary_key=True)
	entity_id = Column(String(255), nullable=False, index=True)
	result = Column(JSONDocument, nullable=False, default=dict)
	expires_at = Column(DateTime(timezone=True), index=True)
