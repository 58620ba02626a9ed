import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./fsm_outbox_test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

import asyncio
from typing import Any, AsyncGenerator, Dict, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from fsm_outbox.core.exceptions import DispatchError
from fsm_outbox.core.redis import get_redis
from fsm_outbox.database import Base, get_session, get_session_factory
from fsm_outbox.main import app
from fsm_outbox.models import fsm_state, fsm_event, outbox, idempotency  # noqa: F401
from fsm_outbox.services.command_handler import InitializeFSMCommandHandler
from fsm_outbox.services.job_queue import JobQueue


class _FakeRedis:
	"""In-memory stand-in for the subset of redis.asyncio the services use"""

	def __init__(self) -> None:
		self.store: Dict[str, str] = {}
		self.ttls: Dict[str, int] = {}

	async def get(self, key: str):
		return self.store.get(key)

	async def set(self, key: str, value, ex: Optional[int] = None, nx: bool = False):
		if nx and key in self.store:
			return None
		self.store[key] = value
		if ex is not None:
			self.ttls[key] = ex
		return True

	async def delete(self, *keys: str) -> int:
		removed = 0
		for key in keys:
			if self.store.pop(key, None) is not None:
				removed += 1
			self.ttls.pop(key, None)
		return removed

	async def ping(self) -> bool:
		return True


class _UnavailableRedis:
	"""Every call fails the way a dropped Redis connection does"""

	def __init__(self) -> None:
		self.calls = 0

	async def _fail(self, *args, **kwargs):
		self.calls += 1
		raise RedisConnectionError("Connection refused")

	get = set = delete = ping = _fail


class _RecordingJobQueue(JobQueue):
	def __init__(self, fail_queues: tuple = (), delay: float = 0.0) -> None:
		self.enqueued: List[Dict[str, Any]] = []
		self.fail_queues = fail_queues
		self.delay = delay

	async def enqueue(self, queue_name, job_data, options=None, job_id=None) -> str:
		if self.delay:
			await asyncio.sleep(self.delay)
		if queue_name in self.fail_queues:
			raise DispatchError(f"queue {queue_name} unavailable")
		self.enqueued.append({
			"queue_name": queue_name,
			"job_data": job_data,
			"options": options,
			"job_id": job_id,
		})
		return job_id


@pytest.fixture
async def engine(tmp_path):
	"""SQLite file database; BEGIN IMMEDIATE serializes writers like row locks would"""
	engine = create_async_engine(
		f"sqlite+aiosqlite:///{tmp_path / 'fsm_outbox.db'}",
		poolclass=NullPool,
		connect_args={"timeout": 30},
	)

	@event.listens_for(engine.sync_engine, "connect")
	def _disable_pysqlite_transactions(dbapi_connection, connection_record):
		dbapi_connection.isolation_level = None

	@event.listens_for(engine.sync_engine, "begin")
	def _begin_immediate(conn):
		conn.exec_driver_sql("BEGIN IMMEDIATE")

	async with engine.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)

	yield engine

	await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
	return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
	async with session_factory() as session:
		yield session


@pytest.fixture
def fake_redis() -> _FakeRedis:
	return _FakeRedis()


@pytest.fixture
def unavailable_redis() -> _UnavailableRedis:
	return _UnavailableRedis()


@pytest.fixture
def job_queue() -> _RecordingJobQueue:
	return _RecordingJobQueue()


@pytest.fixture
def make_job_queue():
	"""Factory for job queues that fail or stall on chosen queues"""
	return _RecordingJobQueue


@pytest.fixture
def handler(session_factory, fake_redis) -> InitializeFSMCommandHandler:
	return InitializeFSMCommandHandler(session_factory, fake_redis, transaction_timeout=30)


@pytest.fixture
def make_command():
	"""Valid command payload, overridable per test"""

	def _make(**overrides) -> Dict[str, Any]:
		command = {
			"entity_id": "doc-1",
			"user_id": "user-1",
			"organization_id": "org-1",
			"idempotency_key": "key-1",
			"initial_state": "stage_2_init",
			"data": {"source": "upload"},
			"jobs": [{"queue": "doc-processing", "data": {"entity_id": "doc-1"}}],
		}
		command.update(overrides)
		return command

	return _make


@pytest.fixture
async def client(session_factory, fake_redis) -> AsyncGenerator[AsyncClient, None]:
	"""Create a test client"""

	async def override_get_session():
		async with session_factory() as session:
			yield session
			await session.commit()

	async def override_get_redis():
		return fake_redis

	app.dependency_overrides[get_session] = override_get_session
	app.dependency_overrides[get_session_factory] = lambda: session_factory
	app.dependency_overrides[get_redis] = override_get_redis

	async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
		yield client

	app.dependency_overrides.clear()
