import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from fsm_outbox.models.base import utcnow
from fsm_outbox.models.fsm_state import FSMState
from fsm_outbox.models.idempotency import IdempotencyKey
from fsm_outbox.schemas.fsm import FSMStateSnapshot, InitializeFSMResult
from fsm_outbox.services.idempotency_service import IdempotencyService, cache_key


def _result(entity_id: str = "doc-1") -> InitializeFSMResult:
	return InitializeFSMResult(
		fsm_state=FSMStateSnapshot(entity_id=entity_id, state="stage_2_init", data={}, updated_at=utcnow()),
		outbox_entries=[],
	)


class _SlowRedis:
	async def get(self, key):
		await asyncio.sleep(1)

	async def set(self, key, value, ex=None):
		await asyncio.sleep(1)


@pytest.mark.asyncio
async def test_cache_round_trip_marks_result_as_cached(fake_redis):
	service = IdempotencyService(fake_redis, ttl_seconds=60)

	assert await service.cache_result("k1", _result()) is True
	cached = await service.get_cached("k1")

	assert cached.from_cache is True
	assert cached.fsm_state.entity_id == "doc-1"
	assert fake_redis.ttls[cache_key("k1")] == 60


@pytest.mark.asyncio
async def test_cache_miss_returns_none(fake_redis):
	assert await IdempotencyService(fake_redis).get_cached("unknown") is None


@pytest.mark.asyncio
async def test_no_cache_client_is_always_a_miss():
	service = IdempotencyService(None)

	assert await service.cache_result("k1", _result()) is False
	assert await service.get_cached("k1") is None


@pytest.mark.asyncio
async def test_cache_errors_are_downgraded(unavailable_redis):
	service = IdempotencyService(unavailable_redis)

	assert await service.get_cached("k1") is None
	assert await service.cache_result("k1", _result()) is False
	assert unavailable_redis.calls == 2


@pytest.mark.asyncio
async def test_slow_cache_times_out_as_miss():
	service = IdempotencyService(_SlowRedis(), cache_timeout=0.05)

	assert await service.get_cached("k1") is None
	assert await service.cache_result("k1", _result()) is False


@pytest.mark.asyncio
async def test_corrupt_cache_entry_is_ignored(fake_redis):
	fake_redis.store[cache_key("k1")] = "{not json"
	fake_redis.store[cache_key("k2")] = json.dumps({"unexpected": True})
	service = IdempotencyService(fake_redis)

	assert await service.get_cached("k1") is None
	assert await service.get_cached("k2") is None


@pytest.mark.asyncio
async def test_build_record_sets_expiry():
	now = utcnow()
	record = IdempotencyService(ttl_seconds=3600).build_record("k1", "doc-1", _result(), now)

	assert record["idempotency_key"] == "k1"
	assert record["entity_id"] == "doc-1"
	assert record["expires_at"] - record["created_at"] == timedelta(hours=1)
	assert "from_cache" not in record["result"]


@pytest.mark.asyncio
async def test_purge_expired_keeps_live_keys_and_state(handler, session_factory, make_command):
	await handler.handle(make_command(idempotency_key="old"))
	await handler.handle(make_command(entity_id="doc-2", idempotency_key="fresh"))

	async with session_factory() as session:
		record = await session.get(IdempotencyKey, "old")
		record.expires_at = utcnow() - timedelta(minutes=1)
		await session.commit()

	async with session_factory() as session:
		deleted = await IdempotencyService().purge_expired(session, utcnow())

	assert deleted == 1
	async with session_factory() as session:
		keys = (await session.execute(select(IdempotencyKey.idempotency_key))).scalars().all()
		assert keys == ["fresh"]
		assert await session.get(FSMState, "doc-1") is not None


@pytest.mark.asyncio
async def test_get_record_reads_durable_snapshot(handler, session_factory, make_command):
	result = await handler.handle(make_command())

	async with session_factory() as session:
		stored = await IdempotencyService().get_record(session, "key-1")
		missing = await IdempotencyService().get_record(session, "nope")

	assert stored.from_cache is True
	assert stored.outbox_entries[0].outbox_id == result.outbox_entries[0].outbox_id
	assert missing is None
