import enum
import uuid

from sqlalchemy import Column, String, Uuid, Index, Enum as SQLEnum

from fsm_outbox.database import Base
from fsm_outbox.models.base import BaseModel, JSONDocument


class InitiatedBy(str, enum.Enum):
	API = "API"
	WORKER = "WORKER"
	SYSTEM = "SYSTEM"


class FSMEvent(Base, BaseModel):
	"""Append-only audit trail of state transitions"""
	__tablename__ = "fsm_events"

	event_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
	entity_id = Column(String(255), nullable=False)
	event_type = Column(String(50), nullable=False, default="state_transition")
	to_state = Column(String(100), nullable=False)
	initiated_by = Column(SQLEnum(InitiatedBy, name="fsm_initiated_by"), nullable=False)
	event_data = Column(JSONDocument, nullable=False, default=dict)
	user_id = Column(String(255))

	__table_args__ = (
		Index("idx_fsm_events_entity", "entity_id", "created_at"),
	)
