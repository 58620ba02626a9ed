"""
Periodic backup for FSM initialization.

Asks a deployment-provided finder for entities whose own status still reads
"not yet started" after a grace period, and re-submits each one to the
command handler. The finder owns the external entity table; this module
never guesses at it. Re-submission reuses the entity's original idempotency
key when it has one, so an entity that Layer 1 already initialized is a
cache hit and writes nothing.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from kombu.utils.imports import symbol_by_name
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fsm_outbox.config import settings
from fsm_outbox.core.exceptions import ConfigurationError
from fsm_outbox.database import AsyncSessionLocal
from fsm_outbox.models.base import utcnow
from fsm_outbox.models.fsm_event import InitiatedBy
from fsm_outbox.monitoring.metrics import stalled_entities_resubmitted
from fsm_outbox.schemas.fsm import InitializeFSMCommand
from fsm_outbox.services.command_handler import InitializeFSMCommandHandler

logger = logging.getLogger(__name__)


@dataclass
class StalledEntity:
	"""An external entity that should have an FSM by now, and how to initialize it"""
	entity_id: str
	status: str
	since: datetime
	user_id: str = "system"
	organization_id: str = "unknown"
	# Key of the original initialization request, when the entity recorded one
	idempotency_key: Optional[str] = None
	initial_state: Optional[str] = None
	jobs: List[Dict[str, Any]] = field(default_factory=list)
	data: Dict[str, Any] = field(default_factory=dict)


# (session, older_than, limit) -> entities stalled since before older_than
StalledEntityFinder = Callable[[AsyncSession, datetime, int], Awaitable[List[StalledEntity]]]


def load_stalled_entity_finder(path: Optional[str] = None) -> StalledEntityFinder:
	"""Resolve `STALLED_ENTITY_FINDER` ("package.module:function")"""
	path = path or settings.STALLED_ENTITY_FINDER
	if not path:
		raise ConfigurationError(
			"STALLED_ENTITY_FINDER is not set; the stalled entity scan needs a finder "
			"that reads the external entity status"
		)
	return symbol_by_name(path)


class StalledEntityScanner:
	def __init__(
			self,
			command_handler: InitializeFSMCommandHandler,
			finder: StalledEntityFinder,
			session_factory: Optional[async_sessionmaker] = None,
			recovery_state: str = settings.FSM_RECOVERY_STATE,
			grace_period_seconds: int = settings.STALLED_GRACE_PERIOD_SECONDS,
			limit: int = settings.STALLED_SCAN_LIMIT
	):
		self.command_handler = command_handler
		self.finder = finder
		self.session_factory = session_factory or AsyncSessionLocal
		self.recovery_state = recovery_state
		self.grace_period = timedelta(seconds=grace_period_seconds)
		self.limit = limit

	@staticmethod
	def idempotency_key_for(entity: StalledEntity) -> str:
		if entity.idempotency_key:
			return entity.idempotency_key
		return f"stalled-scan:{entity.entity_id}:{entity.status}:{int(entity.since.timestamp())}"

	def build_command(self, entity: StalledEntity) -> InitializeFSMCommand:
		return InitializeFSMCommand(
			entity_id=entity.entity_id,
			user_id=entity.user_id,
			organization_id=entity.organization_id,
			idempotency_key=self.idempotency_key_for(entity),
			initiated_by=InitiatedBy.SYSTEM,
			initial_state=entity.initial_state or self.recovery_state,
			data={
				**entity.data,
				"trigger": "stalled_entity_scan",
				"stalled_status": entity.status,
				"stalled_since": entity.since.isoformat(),
			},
			jobs=entity.jobs,
		)

	async def scan(self, now: Optional[datetime] = None) -> Dict[str, int]:
		"""Run one scan. Per-entity failures are logged and counted, not raised."""
		cutoff = (now or utcnow()) - self.grace_period

		async with self.session_factory() as session:
			stalled = await self.finder(session, cutoff, self.limit)

		summary = {"found": len(stalled), "resubmitted": 0, "already_initialized": 0, "failed": 0}
		if not stalled:
			return summary

		logger.warning(f"Found {len(stalled)} entities stalled before initialization (cutoff {cutoff.isoformat()})")

		for entity in stalled:
			try:
				result = await self.command_handler.handle(self.build_command(entity))
			except Exception as e:
				stalled_entities_resubmitted.labels(outcome="failed").inc()
				logger.error(f"Failed to re-submit stalled entity {entity.entity_id}: {e}", exc_info=True)
				summary["failed"] += 1
				continue

			if result.from_cache:
				stalled_entities_resubmitted.labels(outcome="already_initialized").inc()
				summary["already_initialized"] += 1
			else:
				stalled_entities_resubmitted.labels(outcome="resubmitted").inc()
				logger.info(
					f"Stalled entity {entity.entity_id} initialized to {result.fsm_state.state} "
					f"with {len(result.outbox_entries)} jobs"
				)
				summary["resubmitted"] += 1

		return summary
