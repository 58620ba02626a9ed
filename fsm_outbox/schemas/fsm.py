# =====================================
# fsm_outbox/schemas/fsm.py
# =====================================
import uuid
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from fsm_outbox.models.fsm_event import InitiatedBy

RequiredStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]


class JobSpec(BaseModel):
	"""A job to enqueue once the FSM state is committed"""
	queue: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
	data: Dict[str, Any] = Field(default_factory=dict)
	options: Dict[str, Any] = Field(default_factory=dict)
	# Generated by the handler when omitted
	outbox_id: Optional[uuid.UUID] = None

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitializeFSMCommand(BaseModel):
	entity_id: RequiredStr
	user_id: RequiredStr
	organization_id: RequiredStr
	idempotency_key: RequiredStr
	initiated_by: InitiatedBy = InitiatedBy.API
	initial_state: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
	data: Dict[str, Any] = Field(default_factory=dict)
	jobs: List[JobSpec] = Field(default_factory=list)

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FSMStateSnapshot(BaseModel):
	entity_id: str
	state: str
	data: Dict[str, Any] = Field(default_factory=dict)
	updated_at: datetime

	model_config = ConfigDict(from_attributes=True)


class OutboxEntrySnapshot(BaseModel):
	outbox_id: uuid.UUID
	entity_id: str
	queue_name: str
	job_data: Dict[str, Any] = Field(default_factory=dict)
	job_options: Dict[str, Any] = Field(default_factory=dict)
	processed_at: Optional[datetime] = None
	attempts: int = 0
	last_attempt_at: Optional[datetime] = None
	last_error: Optional[str] = None
	created_at: datetime

	model_config = ConfigDict(from_attributes=True)


class InitializeFSMResult(BaseModel):
	fsm_state: FSMStateSnapshot
	outbox_entries: List[OutboxEntrySnapshot] = Field(default_factory=list)
	from_cache: bool = False

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	def to_record(self) -> Dict[str, Any]:
		"""JSON-safe snapshot stored in the idempotency table and cache"""
		return self.model_dump(mode="json", exclude={"from_cache"})

	@classmethod
	def from_record(cls, record: Dict[str, Any]) -> "InitializeFSMResult":
		result = cls.model_validate(record)
		result.from_cache = True
		return result


class FSMEventResponse(BaseModel):
	event_id: uuid.UUID
	entity_id: str
	event_type: str
	to_state: str
	initiated_by: InitiatedBy
	event_data: Dict[str, Any]
	user_id: Optional[str]
	created_at: datetime

	model_config = ConfigDict(from_attributes=True)


class InitializeFSMRequest(BaseModel):
	"""HTTP body for FSM initialization. The key may also come from `X-Idempotency-Key`."""
	entity_id: str
	user_id: str
	organization_id: str
	idempotency_key: Optional[str] = None
	initial_state: str
	data: Dict[str, Any] = Field(default_factory=dict)
	jobs: List[Dict[str, Any]] = Field(default_factory=list)

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
