"""
Outbox processor.

Polls `job_outbox` for pending entries (oldest first), hands each one to the
job queue and marks it dispatched. Failed or timed-out handoffs bump
`attempts` and stay pending for the next poll; there is no attempt cap here.

A crash between the queue handoff and the commit re-dispatches the entry on
the next poll, so consumers must deduplicate on `outbox_id`.

Run standalone with `python -m fsm_outbox.workers.outbox_processor`.
"""
import asyncio
import logging
import signal
import time
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from fsm_outbox.config import settings
from fsm_outbox.database import AsyncSessionLocal, close_db
from fsm_outbox.models.base import utcnow
from fsm_outbox.models.outbox import OutboxEntry
from fsm_outbox.monitoring.metrics import outbox_batch_duration, outbox_dispatches, outbox_queue_depth
from fsm_outbox.schemas.outbox import OutboxProcessorHealth
from fsm_outbox.services.job_queue import CeleryJobQueue, JobQueue
from fsm_outbox.services.outbox_service import OutboxService

logger = logging.getLogger(__name__)

# Processor is considered stuck when it has not polled for this long
HEALTH_STALE_SECONDS = 60


class OutboxProcessor:
	"""Background worker that drains the transactional outbox"""

	def __init__(
			self,
			job_queue: Optional[JobQueue] = None,
			session_factory: Optional[async_sessionmaker] = None,
			batch_size: int = settings.OUTBOX_BATCH_SIZE,
			parallel_size: int = settings.OUTBOX_PARALLEL_SIZE,
			dispatch_timeout: float = settings.OUTBOX_DISPATCH_TIMEOUT_SECONDS,
			min_poll_interval: float = settings.OUTBOX_POLL_MIN_SECONDS,
			max_poll_interval: float = settings.OUTBOX_POLL_MAX_SECONDS,
			backoff_multiplier: float = settings.OUTBOX_POLL_BACKOFF,
			error_sleep: float = settings.OUTBOX_ERROR_SLEEP_SECONDS
	):
		self.job_queue = job_queue or CeleryJobQueue()
		self.session_factory = session_factory or AsyncSessionLocal
		self.batch_size = batch_size
		self.parallel_size = max(1, parallel_size)
		self.dispatch_timeout = dispatch_timeout
		self.min_poll_interval = min_poll_interval
		self.max_poll_interval = max_poll_interval
		self.backoff_multiplier = backoff_multiplier
		self.error_sleep = error_sleep

		self.running = False
		self.poll_interval = min_poll_interval
		self.last_processed_at: datetime = utcnow()
		self.queue_depth = 0
		self._stop_event = asyncio.Event()

	async def start(self):
		"""Poll until stop() is called"""
		self.running = True
		self._stop_event.clear()
		logger.info(
			f"Outbox processor started (batch_size={self.batch_size}, "
			f"parallel={self.parallel_size}, poll={self.min_poll_interval}-{self.max_poll_interval}s)"
		)

		while self.running:
			try:
				dispatched = await self.process_batch()
				self.last_processed_at = utcnow()

				# Adaptive polling: back off when idle, reset when work was found
				if dispatched == 0:
					self.poll_interval = min(self.poll_interval * self.backoff_multiplier, self.max_poll_interval)
				else:
					self.poll_interval = self.min_poll_interval

				await self._sleep(self.poll_interval)
			except Exception as e:
				logger.error(f"Outbox processor error, retrying in {self.error_sleep}s: {e}", exc_info=True)
				await self._sleep(self.error_sleep)

		logger.info("Outbox processor stopped")

	async def stop(self):
		"""Stop after the current batch"""
		self.running = False
		self._stop_event.set()
		logger.info("Stopping outbox processor")

	async def _sleep(self, seconds: float):
		try:
			await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
		except asyncio.TimeoutError:
			pass

	def health(self) -> OutboxProcessorHealth:
		since_last = (utcnow() - self.last_processed_at).total_seconds()
		return OutboxProcessorHealth(
			alive=self.running and since_last < HEALTH_STALE_SECONDS,
			last_processed=self.last_processed_at,
			queue_depth=self.queue_depth,
			poll_interval=self.poll_interval,
		)

	async def process_batch(self) -> int:
		"""Dispatch one batch of pending entries. Returns the number dispatched."""
		started = time.perf_counter()
		dispatched = 0
		failed = 0

		async with self.session_factory() as session:
			async with session.begin():
				outbox_service = OutboxService(session)
				entries = await outbox_service.get_pending_entries(limit=self.batch_size)

				self.queue_depth = len(entries)
				outbox_queue_depth.set(self.queue_depth)
				if not entries:
					return 0

				logger.info(f"Processing {len(entries)} outbox entries")

				for i in range(0, len(entries), self.parallel_size):
					group = entries[i:i + self.parallel_size]
					outcomes = await asyncio.gather(
						*(self._dispatch(entry) for entry in group),
						return_exceptions=True
					)

					for entry, outcome in zip(group, outcomes):
						if isinstance(outcome, BaseException):
							outbox_service.mark_as_failed(entry, self._describe_failure(outcome))
							outbox_dispatches.labels(queue_name=entry.queue_name, status="failed").inc()
							failed += 1
						else:
							outbox_service.mark_as_processed(entry)
							outbox_dispatches.labels(queue_name=entry.queue_name, status="dispatched").inc()
							dispatched += 1

		outbox_batch_duration.observe(time.perf_counter() - started)
		logger.info(f"Outbox batch: {dispatched} dispatched, {failed} failed")
		return dispatched

	async def _dispatch(self, entry: OutboxEntry) -> str:
		return await asyncio.wait_for(
			self.job_queue.enqueue(
				entry.queue_name,
				entry.job_data or {},
				entry.job_options or {},
				job_id=str(entry.outbox_id)
			),
			timeout=self.dispatch_timeout
		)

	def _describe_failure(self, error: BaseException) -> str:
		if isinstance(error, asyncio.TimeoutError):
			return f"Dispatch timed out after {self.dispatch_timeout}s"
		return str(error) or type(error).__name__


async def run_processor():
	from fsm_outbox.core.logging_config import setup_logging

	setup_logging()
	processor = OutboxProcessor()

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGTERM, signal.SIGINT):
		loop.add_signal_handler(sig, lambda s=sig: asyncio.ensure_future(_shutdown(processor, s)))

	try:
		await processor.start()
	finally:
		await close_db()


async def _shutdown(processor: OutboxProcessor, sig: signal.Signals):
	logger.info(f"Received {sig.name}, shutting down outbox processor")
	await processor.stop()


if __name__ == "__main__":
	asyncio.run(run_processor())
