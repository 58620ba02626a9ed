"""
Atomic FSM initialization with transactional outbox.

One command produces, in a single database transaction:

1. the idempotency record (claimed first, so racing callers fail fast),
2. the FSM state row (upserted),
3. one `state_transition` event,
4. one outbox row per job.

Callers that lose the race on the idempotency key re-read the winner's
record and get its result back with `from_cache=True`. Every other store
error propagates unchanged; retrying is safe because of the key.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy import insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fsm_outbox.config import settings
from fsm_outbox.core.exceptions import CommandValidationError
from fsm_outbox.database import AsyncSessionLocal
from fsm_outbox.models.base import utcnow
from fsm_outbox.models.fsm_event import FSMEvent
from fsm_outbox.models.fsm_state import FSMState
from fsm_outbox.models.idempotency import IdempotencyKey
from fsm_outbox.models.outbox import OutboxEntry
from fsm_outbox.monitoring.metrics import fsm_initializations, fsm_initialization_duration
from fsm_outbox.schemas.fsm import (
	FSMStateSnapshot,
	InitializeFSMCommand,
	InitializeFSMResult,
	OutboxEntrySnapshot,
)
from fsm_outbox.services.idempotency_service import IdempotencyService

logger = logging.getLogger(__name__)

UPSERT_DIALECTS = {
	"postgresql": postgresql.insert,
	"sqlite": sqlite.insert,
}


class InitializeFSMCommandHandler:
	def __init__(
			self,
			session_factory: Optional[async_sessionmaker] = None,
			redis_client=None,
			idempotency_service: Optional[IdempotencyService] = None,
			transaction_timeout: float = settings.DB_TRANSACTION_TIMEOUT_SECONDS
	):
		self.session_factory = session_factory or AsyncSessionLocal
		self.idempotency = idempotency_service or IdempotencyService(redis_client)
		self.transaction_timeout = transaction_timeout

	async def handle(self, command: Union[InitializeFSMCommand, Dict[str, Any]]) -> InitializeFSMResult:
		command = self.validate(command)
		started = time.perf_counter()

		try:
			result = await self._handle(command)
		except Exception as e:
			fsm_initializations.labels(outcome="failure", from_cache="false").inc()
			logger.error(
				f"FSM initialization failed for {command.entity_id} "
				f"(key={command.idempotency_key}): {e!r}"
			)
			raise
		finally:
			fsm_initialization_duration.observe(time.perf_counter() - started)

		fsm_initializations.labels(outcome="success", from_cache=str(result.from_cache).lower()).inc()
		return result

	@staticmethod
	def validate(command: Union[InitializeFSMCommand, Dict[str, Any]]) -> InitializeFSMCommand:
		"""Reject malformed commands before any store is touched"""
		if isinstance(command, BaseModel):
			command = command.model_dump()

		try:
			return InitializeFSMCommand.model_validate(command)
		except ValidationError as e:
			raise CommandValidationError(
				f"Invalid FSM initialization command: {e.error_count()} error(s)",
				errors=e.errors(include_url=False, include_input=False)
			) from e

	async def _handle(self, command: InitializeFSMCommand) -> InitializeFSMResult:
		cached = await self.idempotency.get_cached(command.idempotency_key)
		if cached is not None:
			logger.info(f"Idempotency cache hit for {command.idempotency_key} (entity {command.entity_id})")
			return cached

		try:
			result = await asyncio.wait_for(
				self._execute(command),
				timeout=self.transaction_timeout
			)
		except IntegrityError:
			winner = await self._read_winner(command.idempotency_key)
			if winner is None:
				# Not the idempotency race (e.g. duplicate outbox_id)
				raise
			logger.info(
				f"Lost idempotency race for {command.idempotency_key}, "
				f"returning result committed for entity {winner.fsm_state.entity_id}"
			)
			await self.idempotency.cache_result(command.idempotency_key, winner)
			return winner

		logger.info(
			f"FSM initialized: entity={command.entity_id} state={command.initial_state} "
			f"jobs={len(result.outbox_entries)} initiated_by={command.initiated_by.value}"
		)
		await self.idempotency.cache_result(command.idempotency_key, result)
		return result

	def _build_result(self, command: InitializeFSMCommand, now: datetime) -> InitializeFSMResult:
		entries = [
			OutboxEntrySnapshot(
				outbox_id=job.outbox_id or uuid.uuid4(),
				entity_id=command.entity_id,
				queue_name=job.queue,
				job_data=job.data,
				job_options=job.options,
				attempts=0,
				created_at=now,
			)
			for job in command.jobs
		]
		return InitializeFSMResult(
			fsm_state=FSMStateSnapshot(
				entity_id=command.entity_id,
				state=command.initial_state,
				data=command.data,
				updated_at=now,
			),
			outbox_entries=entries,
			from_cache=False,
		)

	async def _execute(self, command: InitializeFSMCommand) -> InitializeFSMResult:
		now = utcnow()
		result = self._build_result(command, now)

		async with self.session_factory() as session:
			async with session.begin():
				await session.execute(
					insert(IdempotencyKey).values(
						**self.idempotency.build_record(command.idempotency_key, command.entity_id, result, now)
					)
				)

				previous_state = await session.scalar(
					select(FSMState.state).where(FSMState.entity_id == command.entity_id)
				)
				await self._upsert_state(session, command, now)

				await session.execute(
					insert(FSMEvent).values(
						event_id=uuid.uuid4(),
						entity_id=command.entity_id,
						event_type="state_transition",
						to_state=command.initial_state,
						initiated_by=command.initiated_by,
						event_data={
							"from_state": previous_state,
							"to_state": command.initial_state,
							"organization_id": command.organization_id,
							"idempotency_key": command.idempotency_key,
							"job_count": len(command.jobs),
							"data": command.data,
						},
						user_id=command.user_id,
						created_at=now,
					)
				)

				if result.outbox_entries:
					await session.execute(
						insert(OutboxEntry),
						[
							{
								"outbox_id": entry.outbox_id,
								"entity_id": entry.entity_id,
								"queue_name": entry.queue_name,
								"job_data": entry.job_data,
								"job_options": entry.job_options,
								"processed_at": None,
								"attempts": 0,
								"created_at": now,
							}
							for entry in result.outbox_entries
						]
					)

		return result

	async def _upsert_state(self, session: AsyncSession, command: InitializeFSMCommand, now: datetime):
		values = {
			"entity_id": command.entity_id,
			"state": command.initial_state,
			"data": command.data,
			"created_at": now,
			"updated_at": now,
		}
		dialect = session.get_bind().dialect.name
		upsert = UPSERT_DIALECTS.get(dialect)

		if upsert is None:
			await session.merge(FSMState(**values))
			await session.flush()
			return

		stmt = upsert(FSMState).values(**values)
		stmt = stmt.on_conflict_do_update(
			index_elements=[FSMState.entity_id],
			set_={
				"state": stmt.excluded.state,
				"data": stmt.excluded.data,
				"updated_at": stmt.excluded.updated_at,
			}
		)
		await session.execute(stmt)

	async def _read_winner(self, idempotency_key: str) -> Optional[InitializeFSMResult]:
		async with self.session_factory() as session:
			return await self.idempotency.get_record(session, idempotency_key)
