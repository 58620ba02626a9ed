import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from celery import Task
from sqlalchemy.ext.asyncio import async_sessionmaker

from fsm_outbox.config import settings
from fsm_outbox.core.redis import create_redis_client
from fsm_outbox.database import AsyncSessionLocal, engine
from fsm_outbox.models.fsm_event import InitiatedBy
from fsm_outbox.models.fsm_state import FSMState
from fsm_outbox.monitoring.metrics import worker_fallback_activations
from fsm_outbox.schemas.fsm import InitializeFSMCommand
from fsm_outbox.services.command_handler import InitializeFSMCommandHandler
from fsm_outbox.services.consumer_dedup import ConsumerDeduplicator

logger = logging.getLogger(__name__)

JobBody = Callable[[Dict[str, Any], Optional[str]], Awaitable[Any]]


class WorkerFSMGuard:
	"""Worker-side check that a job's entity has an initialized FSM state"""

	def __init__(
			self,
			command_handler: InitializeFSMCommandHandler,
			session_factory: Optional[async_sessionmaker] = None,
			pending_states: Sequence[str] = tuple(settings.FSM_PENDING_STATES)
	):
		self.command_handler = command_handler
		self.session_factory = session_factory or AsyncSessionLocal
		self.pending_states = pending_states

	async def is_initialized(self, entity_id: str, expected_states: Optional[Sequence[str]] = None) -> bool:
		async with self.session_factory() as session:
			current = await session.get(FSMState, entity_id)

		if current is None:
			return False
		if expected_states is not None:
			return current.state in expected_states
		return current.state not in self.pending_states

	async def ensure_initialized(
			self,
			*,
			entity_id: str,
			initial_state: str,
			queue_name: str,
			job_id: str,
			expected_states: Optional[Sequence[str]] = None,
			user_id: Optional[str] = None,
			organization_id: Optional[str] = None
	) -> bool:
		"""
		Initialize the entity's FSM when the job arrived before it.

		Returns True when the entity is initialized on return. A failed fallback
		is logged and reported as False; the job carries on.
		"""
		if await self.is_initialized(entity_id, expected_states):
			return True

		logger.warning(
			f"Worker validation: FSM for {entity_id} not initialized "
			f"(job {job_id} on {queue_name}), initializing as fallback"
		)

		command = InitializeFSMCommand(
			entity_id=entity_id,
			user_id=user_id or "system",
			organization_id=organization_id or "unknown",
			idempotency_key=f"worker-fallback-{queue_name}-{job_id}",
			initiated_by=InitiatedBy.WORKER,
			initial_state=initial_state,
			data={"trigger": f"worker_fallback_{queue_name}"},
			jobs=[],
		)

		try:
			await self.command_handler.handle(command)
		except Exception as e:
			worker_fallback_activations.labels(success="false").inc()
			logger.warning(
				f"Worker fallback initialization failed for {entity_id} (continuing processing): {e}",
				exc_info=True
			)
			return False

		worker_fallback_activations.labels(success="true").inc()
		logger.info(f"Worker fallback: {entity_id} initialized to {initial_state}")
		return True


def _entity_from_job(job_data: Dict[str, Any]) -> Optional[str]:
	return job_data.get("entity_id") or job_data.get("entityId")


async def run_guarded_job(
		job_data: Dict[str, Any],
		outbox_id: Optional[str],
		*,
		run_job: JobBody,
		queue_name: str,
		redis_client,
		session_factory: Optional[async_sessionmaker] = None,
		initial_state: Optional[str] = None,
		expected_states: Optional[Sequence[str]] = None
) -> Any:
	"""Deduplicate on outbox_id, run the worker fallback, then the job body"""
	dedup = ConsumerDeduplicator(redis_client)
	if outbox_id and not await dedup.claim(outbox_id):
		return {"skipped": True, "outbox_id": outbox_id}

	succeeded = False
	try:
		entity_id = _entity_from_job(job_data)
		if initial_state and entity_id:
			handler = InitializeFSMCommandHandler(session_factory, redis_client)
			guard = WorkerFSMGuard(handler, session_factory)
			await guard.ensure_initialized(
				entity_id=entity_id,
				initial_state=initial_state,
				queue_name=queue_name,
				job_id=outbox_id or "unknown",
				expected_states=expected_states,
				user_id=job_data.get("user_id") or job_data.get("userId"),
				organization_id=job_data.get("organization_id") or job_data.get("organizationId"),
			)

		result = await run_job(job_data, outbox_id)
		succeeded = True
		return result
	finally:
		# Also reached on cancellation or interpreter exit
		if outbox_id:
			if succeeded:
				await dedup.mark_done(outbox_id)
			else:
				await dedup.release(outbox_id)


class FSMGuardedTask(Task):
	"""
	Base class for Celery tasks consuming outbox-dispatched jobs.

	Subclasses implement `run_job(job_data, outbox_id)` as a coroutine and
	set `initial_state` (plus optionally `expected_states`) to enable the
	worker-side FSM fallback.
	"""

	abstract = True
	initial_state: Optional[str] = None
	expected_states: Optional[Sequence[str]] = None

	async def run_job(self, job_data: Dict[str, Any], outbox_id: Optional[str]) -> Any:
		raise NotImplementedError

	def run(self, job_data: Dict[str, Any], outbox_id: Optional[str] = None):
		loop = asyncio.new_event_loop()
		asyncio.set_event_loop(loop)
		try:
			return loop.run_until_complete(self._run_guarded(job_data, outbox_id))
		finally:
			loop.run_until_complete(engine.dispose())
			loop.close()

	async def _run_guarded(self, job_data: Dict[str, Any], outbox_id: Optional[str]):
		delivery_info = self.request.delivery_info or {}
		redis_client = create_redis_client()
		try:
			return await run_guarded_job(
				job_data,
				outbox_id or self.request.id,
				run_job=self.run_job,
				queue_name=delivery_info.get("routing_key") or self.name,
				redis_client=redis_client,
				initial_state=self.initial_state,
				expected_states=self.expected_states,
			)
		finally:
			await redis_client.aclose()
