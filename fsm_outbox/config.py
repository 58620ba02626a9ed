from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from dotenv import load_dotenv
load_dotenv()


class Settings(BaseSettings):
	# App
	APP_NAME: str = "FSM Outbox Service"
	APP_VERSION: str = "1.0.0"
	API_V1_PREFIX: str = "/api/v1"
	DEBUG: bool = False
	ENVIRONMENT: str = "development" # development, staging, production
	LOG_LEVEL: str = "INFO"

	# Database
	DATABASE_URL: str
	DB_POOL_SIZE: int = 20
	DB_MAX_OVERFLOW: int = 40
	DB_POOL_PRE_PING: bool = True
	DB_ECHO: bool = False
	DB_TRANSACTION_TIMEOUT_SECONDS: float = 10.0
	AUTO_CREATE_TABLES: bool = False

	# Redis (idempotency cache)
	REDIS_URL: str
	REDIS_POOL_SIZE: int = 10
	CACHE_TIMEOUT_SECONDS: float = 0.5
	IDEMPOTENCY_TTL_SECONDS: int = 24 * 3600

	# Celery (job queue collaborator)
	CELERY_BROKER_URL: Optional[str] = None
	CELERY_RESULT_BACKEND: Optional[str] = None
	JOB_TASK_PREFIX: str = "jobs."

	# Outbox processor
	OUTBOX_BATCH_SIZE: int = 100
	OUTBOX_PARALLEL_SIZE: int = 10
	OUTBOX_DISPATCH_TIMEOUT_SECONDS: float = 10.0
	OUTBOX_POLL_MIN_SECONDS: float = 1.0
	OUTBOX_POLL_MAX_SECONDS: float = 30.0
	OUTBOX_POLL_BACKOFF: float = 1.5
	OUTBOX_ERROR_SLEEP_SECONDS: float = 5.0
	OUTBOX_BEAT_INTERVAL_SECONDS: float = 10.0

	# Fallback detectors
	FSM_PENDING_STATES: List[str] = ["pending"]
	FSM_RECOVERY_STATE: str = "stage_2_init"
	# Import path ("package.module:function") of the finder reading external entity status
	STALLED_ENTITY_FINDER: Optional[str] = None
	STALLED_GRACE_PERIOD_SECONDS: int = 300
	STALLED_SCAN_LIMIT: int = 100
	STALLED_SCAN_INTERVAL_SECONDS: float = 300.0
	CONSUMER_CLAIM_TTL_SECONDS: int = 600
	CONSUMER_DEDUP_TTL_SECONDS: int = 7 * 24 * 3600

	# Monitoring
	EXPOSE_METRICS: bool = True

	model_config = SettingsConfigDict(
		env_file=".env",
		env_file_encoding="utf-8",
		case_sensitive=True
	)

	@property
	def celery_broker_url(self) -> str:
		return self.CELERY_BROKER_URL or self.REDIS_URL

	@property
	def celery_result_backend(self) -> str:
		return self.CELERY_RESULT_BACKEND or self.REDIS_URL


@lru_cache()
def get_settings() -> Settings:
	return Settings()


settings = get_settings()
