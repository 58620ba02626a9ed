import logging
import sys

from fsm_outbox.config import settings


def setup_logging(level: str | None = None) -> None:
	"""Configure root logging for the API, the processor and Celery workers"""
	from fsm_outbox.middleware.request_id import RequestIDLogFilter

	level_name = (level or settings.LOG_LEVEL).upper()

	handler = logging.StreamHandler(sys.stdout)
	handler.addFilter(RequestIDLogFilter())

	logging.basicConfig(
		level=logging.DEBUG if settings.DEBUG else getattr(logging, level_name, logging.INFO),
		format='%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s',
		handlers=[handler],
	)
