import asyncio
import logging

from redis.exceptions import RedisError

from fsm_outbox.config import settings

logger = logging.getLogger(__name__)

CLAIM_IN_PROGRESS = "processing"
CLAIM_DONE = "done"


class ConsumerDeduplicator:
	"""
	Consumer-side guard against duplicate dispatch of one outbox entry.

	The outbox processor delivers at-least-once, with `outbox_id` as the task
	id. A consumer claims the id with Redis SET NX and a short in-progress TTL
	before doing domain work. Success replaces the claim with a long-lived
	done marker; anything else releases it so the redelivery can run. A worker
	killed mid-job leaves only the in-progress claim, which expires.
	"""

	def __init__(
			self,
			redis_client,
			ttl_seconds: int = settings.CONSUMER_DEDUP_TTL_SECONDS,
			claim_ttl_seconds: int = settings.CONSUMER_CLAIM_TTL_SECONDS,
			namespace: str = "outbox-consumed",
			timeout: float = settings.CACHE_TIMEOUT_SECONDS
	):
		self.redis = redis_client
		self.ttl_seconds = ttl_seconds
		self.claim_ttl_seconds = claim_ttl_seconds
		self.namespace = namespace
		self.timeout = timeout

	def _key(self, outbox_id: str) -> str:
		return f"{self.namespace}:{outbox_id}"

	async def claim(self, outbox_id: str) -> bool:
		"""
		Returns True when this consumer should process the entry.

		If Redis is unreachable the entry is processed anyway (at-least-once).
		"""
		try:
			claimed = await asyncio.wait_for(
				self.redis.set(self._key(outbox_id), CLAIM_IN_PROGRESS, nx=True, ex=self.claim_ttl_seconds),
				timeout=self.timeout
			)
		except (RedisError, OSError, asyncio.TimeoutError) as e:
			logger.warning(f"Dedup claim for outbox entry {outbox_id} unavailable, processing anyway: {e!r}")
			return True

		if not claimed:
			logger.warning(f"Duplicate delivery of outbox entry {outbox_id} skipped")
		return bool(claimed)

	async def mark_done(self, outbox_id: str) -> None:
		try:
			await asyncio.wait_for(
				self.redis.set(self._key(outbox_id), CLAIM_DONE, ex=self.ttl_seconds),
				timeout=self.timeout
			)
		except (RedisError, OSError, asyncio.TimeoutError) as e:
			logger.warning(f"Failed to mark outbox entry {outbox_id} as consumed: {e!r}")

	async def release(self, outbox_id: str) -> None:
		try:
			await asyncio.wait_for(self.redis.delete(self._key(outbox_id)), timeout=self.timeout)
		except (RedisError, OSError, asyncio.TimeoutError) as e:
			logger.warning(f"Failed to release dedup claim for outbox entry {outbox_id}: {e!r}")
