import redis.asyncio as redis
from typing import Optional
from fsm_outbox.config import settings
import logging

logger = logging.getLogger(__name__)

redis_pool: Optional[redis.ConnectionPool] = None
redis_client: Optional[redis.Redis] = None


async def init_redis():
	"""Initialize Redis connection pool"""
	global redis_pool, redis_client

	redis_pool = redis.ConnectionPool.from_url(
		settings.REDIS_URL,
		max_connections=settings.REDIS_POOL_SIZE,
		decode_responses=True,
		health_check_interval=30,
		socket_timeout=settings.CACHE_TIMEOUT_SECONDS,
		socket_connect_timeout=settings.CACHE_TIMEOUT_SECONDS,
	)

	redis_client = redis.Redis(connection_pool=redis_pool)

	# The cache is optional: a failed ping is logged, not raised
	try:
		await redis_client.ping()
		logger.info("Redis connection pool initialized")
	except Exception as e:
		logger.warning(f"Redis unavailable at startup, idempotency cache degraded: {e}")


def create_redis_client() -> redis.Redis:
	"""Standalone client for code that runs outside the API event loop (Celery tasks)"""
	return redis.from_url(
		settings.REDIS_URL,
		decode_responses=True,
		socket_timeout=settings.CACHE_TIMEOUT_SECONDS,
		socket_connect_timeout=settings.CACHE_TIMEOUT_SECONDS,
	)


async def get_redis() -> redis.Redis:
	"""Get Redis client"""
	if not redis_client:
		await init_redis()
	return redis_client


async def close_redis():
	"""Close Redis connections"""
	global redis_pool, redis_client

	if redis_client:
		await redis_client.aclose()
		redis_client = None

	if redis_pool:
		await redis_pool.disconnect()
		redis_pool = None

	logger.info("Redis connections closed")


async def check_redis_connection() -> bool:
	"""Check if Redis is healthy"""
	try:
		client = await get_redis()
		await client.ping()
		return True
	except Exception as e:
		logger.error(f"Redis health check failed: {e}")
		return False
