import asyncio
import logging

from celery.schedules import crontab

from fsm_outbox.config import settings
from fsm_outbox.core.celery_app import celery_app
from fsm_outbox.core.redis import create_redis_client
from fsm_outbox.database import AsyncSessionLocal, engine
from fsm_outbox.models.base import utcnow
from fsm_outbox.services.command_handler import InitializeFSMCommandHandler
from fsm_outbox.services.idempotency_service import IdempotencyService
from fsm_outbox.services.stalled_entity_scanner import StalledEntityScanner, load_stalled_entity_finder
from fsm_outbox.workers.outbox_processor import OutboxProcessor

logger = logging.getLogger(__name__)

# Configure periodic tasks
celery_app.conf.beat_schedule = {
	'process-outbox': {
		'task': 'fsm_outbox.workers.scheduled_tasks.process_outbox',
		'schedule': float(settings.OUTBOX_BEAT_INTERVAL_SECONDS),
	},
	'purge-expired-idempotency-keys': {
		'task': 'fsm_outbox.workers.scheduled_tasks.purge_expired_idempotency_keys',
		'schedule': crontab(hour=3, minute=0),  # Daily at 3 AM
	},
}

# The scan reads external entity status, so it only runs where a finder is configured
if settings.STALLED_ENTITY_FINDER:
	celery_app.conf.beat_schedule['scan-stalled-entities'] = {
		'task': 'fsm_outbox.workers.scheduled_tasks.scan_stalled_entities',
		'schedule': float(settings.STALLED_SCAN_INTERVAL_SECONDS),
	}


def _run(coro):
	"""Run a coroutine on a fresh event loop, dropping pooled connections bound to it"""
	loop = asyncio.new_event_loop()
	asyncio.set_event_loop(loop)
	try:
		return loop.run_until_complete(coro)
	finally:
		loop.run_until_complete(engine.dispose())
		loop.close()


@celery_app.task(name="fsm_outbox.workers.scheduled_tasks.process_outbox")
def process_outbox():
	"""Drain one batch of the outbox (backup for the long-running processor)"""
	return _run(_process_outbox_async())


async def _process_outbox_async():
	processor = OutboxProcessor()
	dispatched = await processor.process_batch()
	logger.info(f"Scheduled outbox run: {dispatched} dispatched")
	return {"dispatched": dispatched, "queue_depth": processor.queue_depth}


@celery_app.task(name="fsm_outbox.workers.scheduled_tasks.scan_stalled_entities")
def scan_stalled_entities():
	"""Re-submit entities stuck before FSM initialization"""
	return _run(_scan_stalled_entities_async())


async def _scan_stalled_entities_async(finder_path=None):
	finder = load_stalled_entity_finder(finder_path)
	redis_client = create_redis_client()
	try:
		handler = InitializeFSMCommandHandler(AsyncSessionLocal, redis_client)
		summary = await StalledEntityScanner(handler, finder, AsyncSessionLocal).scan()
	finally:
		await redis_client.aclose()

	logger.info(f"Stalled entity scan: {summary}")
	return summary


@celery_app.task(name="fsm_outbox.workers.scheduled_tasks.purge_expired_idempotency_keys")
def purge_expired_idempotency_keys():
	"""Delete idempotency records past their expiry"""
	return _run(_purge_expired_idempotency_keys_async())


async def _purge_expired_idempotency_keys_async():
	async with AsyncSessionLocal() as db:
		deleted = await IdempotencyService().purge_expired(db, utcnow())

	return {"deleted": deleted}
