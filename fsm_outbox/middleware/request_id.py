from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request
import uuid
import contextvars
import logging

# Context variable to store request ID
request_id_context = contextvars.ContextVar("request_id", default=None)

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
	"""Generate and track unique request IDs"""

	async def dispatch(self, request: Request, call_next):
		request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

		request.state.request_id = request_id
		token = request_id_context.set(request_id)
		try:
			response = await call_next(request)
		finally:
			request_id_context.reset(token)

		response.headers["X-Request-ID"] = request_id
		return response


class RequestIDLogFilter(logging.Filter):
	"""Adds `request_id` to every log record emitted while a request is in flight"""

	def filter(self, record: logging.LogRecord) -> bool:
		record.request_id = get_request_id()
		return True


def get_request_id() -> str:
	"""Get current request ID from context"""
	return request_id_context.get() or "-"
