from sqlalchemy import Column, String, DateTime

from fsm_outbox.database import Base
from fsm_outbox.models.base import BaseModel, JSONDocument, utcnow


class FSMState(Base, BaseModel):
	__tablename__ = "fsm_states"

	entity_id = Column(String(255), primary_key=True)  # owned by the external domain
	state = Column(String(100), nullable=False, index=True)
	data = Column(JSONDocument, nullable=False, default=dict)
	updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, index=True)
