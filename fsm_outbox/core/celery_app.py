# fsm_outbox/core/celery_app.py
from celery import Celery
from fsm_outbox.config import settings

celery_app = Celery(
    "fsm_outbox",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_acks_late=True,            # consumers are idempotent on outbox_id
    worker_prefetch_multiplier=1,
    result_expires=3600,            # 1h
    task_track_started=True,
    include=["fsm_outbox.workers.scheduled_tasks"],
)
