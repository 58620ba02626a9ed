from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from datetime import datetime
from fsm_outbox.models.base import utcnow
from fsm_outbox.models.outbox import OutboxEntry
import logging

logger = logging.getLogger(__name__)


class OutboxService:
	"""Reads and marks `job_outbox` rows.

	Row creation belongs to the command handler; this service only moves
	entries from pending to dispatched and records failed attempts.
	"""

	def __init__(self, session: AsyncSession):
		self.session = session

	async def get_pending_entries(self, limit: int = 100) -> List[OutboxEntry]:
		"""Oldest pending entries first, locked so concurrent processors skip them"""
		query = (
			select(OutboxEntry)
			.where(OutboxEntry.processed_at.is_(None))
			.order_by(OutboxEntry.created_at)
			.limit(limit)
			.with_for_update(skip_locked=True)
		)
		result = await self.session.execute(query)
		return list(result.scalars().all())

	def mark_as_processed(self, entry: OutboxEntry, now: Optional[datetime] = None):
		"""Mark an outbox entry as dispatched"""
		now = now or utcnow()
		entry.processed_at = now
		entry.last_attempt_at = now
		logger.info(f"Outbox entry {entry.outbox_id} dispatched to {entry.queue_name} (entity {entry.entity_id})")

	def mark_as_failed(self, entry: OutboxEntry, error_message: str, now: Optional[datetime] = None):
		"""Record a failed dispatch; the entry stays pending and is retried on the next poll"""
		entry.attempts = (entry.attempts or 0) + 1
		entry.last_attempt_at = now or utcnow()
		entry.last_error = error_message
		logger.warning(
			f"Outbox entry {entry.outbox_id} dispatch attempt #{entry.attempts} failed: {error_message}"
		)

	async def list_for_entity(self, entity_id: str) -> List[OutboxEntry]:
		"""All entries of one entity, pending and dispatched, oldest first"""
		result = await self.session.execute(
			select(OutboxEntry)
			.where(OutboxEntry.entity_id == entity_id)
			.order_by(OutboxEntry.created_at)
		)
		return list(result.scalars().all())

	async def get_stats(self) -> dict:
		"""Pending / processed / failing counts for monitoring"""
		pending = OutboxEntry.processed_at.is_(None)
		result = await self.session.execute(
			select(
				func.count().filter(pending),
				func.count().filter(OutboxEntry.processed_at.is_not(None)),
				func.count().filter(and_(pending, OutboxEntry.attempts > 0)),
				func.min(OutboxEntry.created_at).filter(pending),
			)
		)
		pending_count, processed_count, failing_count, oldest_pending_at = result.one()
		return {
			"pending": pending_count or 0,
			"processed": processed_count or 0,
			"failing": failing_count or 0,
			"oldest_pending_at": oldest_pending_at,
		}
