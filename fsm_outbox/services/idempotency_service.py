"""
Idempotency store: durable `idempotency_keys` table fronted by Redis.

The table is the source of truth (first writer wins through its primary
key). Redis only short-circuits repeated requests; every cache failure is
downgraded to a miss.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from fsm_outbox.config import settings
from fsm_outbox.models.base import utcnow
from fsm_outbox.models.idempotency import IdempotencyKey
from fsm_outbox.schemas.fsm import InitializeFSMResult

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "idempotency"

# Anything the cache can throw at us; none of it is allowed to escape
CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def cache_key(idempotency_key: str) -> str:
	return f"{CACHE_NAMESPACE}:{idempotency_key}"


class IdempotencyService:
	def __init__(
			self,
			redis_client=None,
			ttl_seconds: int = settings.IDEMPOTENCY_TTL_SECONDS,
			cache_timeout: float = settings.CACHE_TIMEOUT_SECONDS
	):
		self.redis = redis_client
		self.ttl_seconds = ttl_seconds
		self.cache_timeout = cache_timeout

	async def get_cached(self, idempotency_key: str) -> Optional[InitializeFSMResult]:
		"""Fast path lookup. Returns None on miss, on cache failure and on a corrupt entry."""
		if self.redis is None:
			return None

		try:
			raw = await asyncio.wait_for(
				self.redis.get(cache_key(idempotency_key)),
				timeout=self.cache_timeout
			)
		except CACHE_ERRORS as e:
			logger.warning(f"Idempotency cache read failed for {idempotency_key}, treating as miss: {e!r}")
			return None

		if raw is None:
			return None

		try:
			return InitializeFSMResult.from_record(json.loads(raw))
		except (ValueError, ValidationError) as e:
			logger.warning(f"Discarding unreadable idempotency cache entry {idempotency_key}: {e}")
			return None

	async def cache_result(self, idempotency_key: str, result: InitializeFSMResult) -> bool:
		"""Best-effort write-through. Never raises."""
		if self.redis is None:
			return False

		try:
			await asyncio.wait_for(
				self.redis.set(
					cache_key(idempotency_key),
					json.dumps(result.to_record()),
					ex=self.ttl_seconds
				),
				timeout=self.cache_timeout
			)
			return True
		except CACHE_ERRORS as e:
			logger.warning(f"Idempotency cache write failed for {idempotency_key}: {e!r}")
			return False

	def build_record(
			self,
			idempotency_key: str,
			entity_id: str,
			result: InitializeFSMResult,
			now: Optional[datetime] = None
	) -> Dict[str, Any]:
		"""Column values for the idempotency row written inside the command transaction"""
		now = now or utcnow()
		return {
			"idempotency_key": idempotency_key,
			"entity_id": entity_id,
			"result": result.to_record(),
			"created_at": now,
			"expires_at": now + timedelta(seconds=self.ttl_seconds),
		}

	async def get_record(self, session: AsyncSession, idempotency_key: str) -> Optional[InitializeFSMResult]:
		"""Durable lookup. Expired rows are still honoured until they are purged."""
		record = await session.get(IdempotencyKey, idempotency_key)
		if record is None:
			return None
		return InitializeFSMResult.from_record(record.result)

	async def purge_expired(self, session: AsyncSession, now: Optional[datetime] = None) -> int:
		"""Delete expired keys. State, event and outbox rows are left untouched."""
		now = now or utcnow()
		result = await session.execute(
			delete(IdempotencyKey).where(IdempotencyKey.expires_at < now)
		)
		await session.commit()

		if result.rowcount:
			logger.info(f"Purged {result.rowcount} expired idempotency keys")
		return result.rowcount
