import pytest
from httpx import AsyncClient

import fsm_outbox.services.health_service as health_service


def _body(**overrides):
	body = {
		"entityId": "c1",
		"userId": "u1",
		"organizationId": "o1",
		"initialState": "stage_2_init",
		"jobs": [{"queue": "doc-proc", "data": {"entityId": "c1"}}],
	}
	body.update(overrides)
	return body


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
	response = await client.get("/health")
	assert response.status_code == 200
	assert response.json()["status"] == "healthy"
	assert "X-Request-ID" in response.headers


@pytest.mark.asyncio
async def test_detailed_health_reports_database_outage(client: AsyncClient, monkeypatch):
	async def db_down():
		return False

	async def redis_up():
		return True

	monkeypatch.setattr(health_service, "check_db_connection", db_down)
	monkeypatch.setattr(health_service, "check_redis_connection", redis_up)

	response = await client.get("/health/detailed")

	assert response.status_code == 200
	data = response.json()
	assert data["overall_health"] == "unhealthy"
	assert data["services"]["database"]["healthy"] is False
	assert data["services"]["redis"]["healthy"] is True


@pytest.mark.asyncio
async def test_initialize_with_header_key(client: AsyncClient):
	response = await client.post(
		"/api/v1/fsm/initialize",
		headers={"X-Idempotency-Key": "k1"},
		json=_body()
	)

	assert response.status_code == 200
	data = response.json()
	assert data["from_cache"] is False
	assert data["fsm_state"]["entity_id"] == "c1"
	assert data["fsm_state"]["state"] == "stage_2_init"
	assert len(data["outbox_entries"]) == 1
	assert data["outbox_entries"][0]["queue_name"] == "doc-proc"


@pytest.mark.asyncio
async def test_initialize_replay_returns_same_result(client: AsyncClient):
	first = await client.post("/api/v1/fsm/initialize", json=_body(idempotencyKey="k1"))
	second = await client.post("/api/v1/fsm/initialize", json=_body(idempotencyKey="k1"))

	assert first.status_code == 200
	assert second.status_code == 200
	assert second.json()["from_cache"] is True
	assert second.json()["outbox_entries"][0]["outbox_id"] == first.json()["outbox_entries"][0]["outbox_id"]


@pytest.mark.asyncio
async def test_header_key_takes_priority_over_body(client: AsyncClient):
	await client.post("/api/v1/fsm/initialize", headers={"X-Idempotency-Key": "header-key"}, json=_body(idempotencyKey="body-key"))
	replay = await client.post("/api/v1/fsm/initialize", headers={"X-Idempotency-Key": "header-key"}, json=_body())

	assert replay.json()["from_cache"] is True


@pytest.mark.asyncio
async def test_initialize_without_key_is_rejected(client: AsyncClient):
	response = await client.post("/api/v1/fsm/initialize", json=_body())

	assert response.status_code == 422
	assert response.json()["detail"]["errors"]


@pytest.mark.asyncio
async def test_initialize_with_blank_entity_is_rejected(client: AsyncClient):
	response = await client.post(
		"/api/v1/fsm/initialize",
		headers={"X-Idempotency-Key": "k1"},
		json=_body(entityId="  ")
	)

	assert response.status_code == 422


@pytest.mark.asyncio
async def test_initialize_with_missing_field_is_rejected(client: AsyncClient):
	body = _body()
	del body["userId"]

	response = await client.post("/api/v1/fsm/initialize", headers={"X-Idempotency-Key": "k1"}, json=body)

	assert response.status_code == 422


@pytest.mark.asyncio
async def test_get_state_and_events(client: AsyncClient):
	await client.post("/api/v1/fsm/initialize", headers={"X-Idempotency-Key": "k1"}, json=_body(initialState="pending", jobs=[]))
	await client.post("/api/v1/fsm/initialize", headers={"X-Idempotency-Key": "k2"}, json=_body())

	state = await client.get("/api/v1/fsm/c1")
	assert state.status_code == 200
	assert state.json()["state"] == "stage_2_init"

	events = await client.get("/api/v1/fsm/c1/events")
	assert events.status_code == 200
	data = events.json()
	assert [e["to_state"] for e in data] == ["pending", "stage_2_init"]
	assert all(e["initiated_by"] == "API" for e in data)


@pytest.mark.asyncio
async def test_get_unknown_state_returns_404(client: AsyncClient):
	response = await client.get("/api/v1/fsm/missing")
	assert response.status_code == 404


@pytest.mark.asyncio
async def test_outbox_stats_endpoint(client: AsyncClient):
	await client.post("/api/v1/fsm/initialize", headers={"X-Idempotency-Key": "k1"}, json=_body())

	response = await client.get("/api/v1/outbox/stats")

	assert response.status_code == 200
	data = response.json()
	assert data["pending"] == 1
	assert data["processed"] == 0
	assert data["failing"] == 0
	assert data["oldest_pending_at"] is not None


@pytest.mark.asyncio
async def test_metrics_endpoint(client: AsyncClient):
	await client.get("/health")

	response = await client.get("/internal/metrics")

	assert response.status_code == 200
	assert "fsm_initializations_total" in response.text


@pytest.mark.asyncio
async def test_list_outbox_entries_for_entity(client: AsyncClient):
	await client.post("/api/v1/fsm/initialize", headers={"X-Idempotency-Key": "k1"}, json=_body())

	response = await client.get("/api/v1/fsm/c1/outbox")

	assert response.status_code == 200
	[entry] = response.json()
	assert entry["queue_name"] == "doc-proc"
	assert entry["job_data"] == {"entityId": "c1"}
	assert entry["processed_at"] is None
	assert entry["attempts"] == 0

	empty = await client.get("/api/v1/fsm/unknown/outbox")
	assert empty.status_code == 200
	assert empty.json() == []


@pytest.mark.asyncio
async def test_duplicate_outbox_id_is_a_conflict(client: AsyncClient):
	outbox_id = "3f1c2b9e-5d4a-4e8b-9a7c-1b2d3e4f5a6b"
	jobs = [{"queue": "doc-proc", "outboxId": outbox_id}]

	first = await client.post("/api/v1/fsm/initialize", headers={"X-Idempotency-Key": "k1"}, json=_body(jobs=jobs))
	second = await client.post(
		"/api/v1/fsm/initialize",
		headers={"X-Idempotency-Key": "k2"},
		json=_body(entityId="c2", jobs=jobs)
	)

	assert first.status_code == 200
	assert second.status_code == 409
	assert (await client.get("/api/v1/fsm/c2")).status_code == 404
