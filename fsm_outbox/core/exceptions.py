class FSMOutboxError(Exception):
	"""Base class for errors raised by this service"""


class CommandValidationError(FSMOutboxError, ValueError):
	"""The initialization command is missing or has malformed fields.

	Raised before any store is touched.
	"""

	def __init__(self, message: str, errors: list | None = None):
		super().__init__(message)
		self.errors = errors or []


class DispatchError(FSMOutboxError):
	"""The job queue refused or failed to accept an outbox entry"""


class ConfigurationError(FSMOutboxError):
	"""A required setting is missing or points at something unusable"""
