from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter
from fastapi.responses import Response

router = APIRouter()

# HTTP
request_count = Counter(
	'http_requests_total',
	'Total HTTP requests',
	['method', 'endpoint', 'status']
)

request_duration = Histogram(
	'http_request_duration_seconds',
	'HTTP request duration',
	['method', 'endpoint'],
	buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

active_requests = Gauge(
	'http_requests_active',
	'Number of active HTTP requests'
)

# FSM initialization (command handler)
fsm_initializations = Counter(
	'fsm_initializations_total',
	'FSM initialization commands handled',
	['outcome', 'from_cache']
)

fsm_initialization_duration = Histogram(
	'fsm_initialization_duration_seconds',
	'Time spent handling an FSM initialization command',
	buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

# Outbox processor
outbox_dispatches = Counter(
	'outbox_dispatches_total',
	'Outbox entries handed to the job queue',
	['queue_name', 'status']
)

outbox_batch_duration = Histogram(
	'outbox_batch_duration_seconds',
	'Duration of one outbox polling batch',
	buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

outbox_queue_depth = Gauge(
	'outbox_pending_batch_size',
	'Pending outbox entries picked up by the last poll'
)

# Fallback detectors
stalled_entities_resubmitted = Counter(
	'fsm_stalled_entities_resubmitted_total',
	'Stalled entities re-submitted by the periodic scanner',
	['outcome']
)

worker_fallback_activations = Counter(
	'fsm_worker_fallback_activations_total',
	'Worker-side fallback initializations',
	['success']
)


@router.get("/metrics")
async def metrics():
	"""Prometheus metrics endpoint"""
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
