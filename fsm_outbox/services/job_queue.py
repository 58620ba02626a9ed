"""Job queue collaborator: where dispatched outbox entries end up."""
import asyncio
import logging
from typing import Any, Dict, Optional

from celery import Celery
from kombu.exceptions import KombuError

from fsm_outbox.config import settings
from fsm_outbox.core.exceptions import DispatchError

logger = logging.getLogger(__name__)

# job_options keys forwarded to Celery's send_task
SEND_TASK_OPTIONS = ("priority", "countdown", "eta", "expires", "headers")


class JobQueue:
	"""Accepts (queue_name, job_data, options) or raises DispatchError"""

	async def enqueue(
			self,
			queue_name: str,
			job_data: Dict[str, Any],
			options: Optional[Dict[str, Any]] = None,
			job_id: Optional[str] = None
	) -> str:
		raise NotImplementedError


class CeleryJobQueue(JobQueue):
	"""Publishes outbox entries as Celery tasks.

	The outbox id is used as the Celery task id, so consumers can use it as
	their deduplication key.
	"""

	def __init__(self, app: Optional[Celery] = None, task_prefix: str = settings.JOB_TASK_PREFIX):
		if app is None:
			from fsm_outbox.core.celery_app import celery_app
			app = celery_app
		self.app = app
		self.task_prefix = task_prefix

	def resolve_task_name(self, queue_name: str, options: Dict[str, Any]) -> str:
		return options.get("task_name") or f"{self.task_prefix}{queue_name}"

	def build_send_options(self, options: Dict[str, Any]) -> Dict[str, Any]:
		send_options = {key: options[key] for key in SEND_TASK_OPTIONS if key in options}
		# Millisecond delays are accepted for queue-agnostic payloads
		if "delay" in options and "countdown" not in send_options:
			send_options["countdown"] = float(options["delay"]) / 1000
		return send_options

	async def enqueue(
			self,
			queue_name: str,
			job_data: Dict[str, Any],
			options: Optional[Dict[str, Any]] = None,
			job_id: Optional[str] = None
	) -> str:
		options = options or {}
		task_name = self.resolve_task_name(queue_name, options)

		try:
			result = await asyncio.to_thread(
				self.app.send_task,
				task_name,
				kwargs={"job_data": job_data, "outbox_id": job_id},
				queue=queue_name,
				task_id=job_id,
				**self.build_send_options(options)
			)
		except (KombuError, OSError) as e:
			raise DispatchError(f"Failed to enqueue {task_name} on {queue_name}: {e}") from e

		logger.debug(f"Enqueued {task_name} on {queue_name} as {result.id}")
		return result.id
