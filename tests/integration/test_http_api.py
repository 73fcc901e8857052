"""
Integration tests for the HTTP API.

Tests cover:
- Stream destination CRUD and validation errors
- Token write-only handling
- Event ingest and backpressure responses
- Dead-letter listing, replay and purge
- Health and stats
"""

import pytest
from aiohttp import test_utils

from auditlog.auditstream_server.api import ApiServices, create_http_app
from auditlog.auditstream_server.buffer import AuditEvent, BufferedEvent, EventBuffer
from auditlog.auditstream_server.deadletter import DeadLetterSink, InMemoryDeadLetterStore
from auditlog.auditstream_server.delivery import DeliveryAttempt, DeliveryTask, OutcomeKind
from auditlog.auditstream_server.registry import InMemoryDestinationStore, StreamRegistry

URL = "https://siem.example.com/ingest"


@pytest.fixture
def services():
    buffer = EventBuffer(capacity=2)
    return ApiServices(
        registry=StreamRegistry(InMemoryDestinationStore()),
        buffer=buffer,
        dead_letters=DeadLetterSink(InMemoryDeadLetterStore(), buffer),
    )


@pytest.fixture
async def client(services):
    client = test_utils.TestClient(test_utils.TestServer(create_http_app(services)))
    await client.start_server()
    yield client
    await client.close()


async def dead_letter(services, project_id="proj_1", destination_id="dst_1"):
    event = AuditEvent(project_id, {"actor": "user:7", "secret": "payload-value"}, 1)
    task = DeliveryTask(BufferedEvent(event), destination_id)
    task.record(
        DeliveryAttempt(
            event_id=event.event_id,
            destination_id=destination_id,
            attempt_number=1,
            outcome=OutcomeKind.FATAL,
            reason="HTTP 404",
            status_code=404,
        )
    )
    return await services.dead_letters.record_task(task, "HTTP 404")


class TestStreamEndpoints:
    """Tests for /v1/projects/{project_id}/streams and /v1/streams/{id}."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, client):
        resp = await client.post(
            "/v1/projects/proj_1/streams", json={"url": URL, "token": "tok_secret"}
        )
        assert resp.status == 201
        created = await resp.json()
        assert created["project_id"] == "proj_1"
        assert created["enabled"] is True
        assert created["has_token"] is True
        assert "token" not in created

        resp = await client.get(f"/v1/streams/{created['id']}")
        assert resp.status == 200
        assert (await resp.json())["url"] == URL

    @pytest.mark.asyncio
    async def test_token_is_never_returned(self, client):
        await client.post("/v1/projects/proj_1/streams", json={"url": URL, "token": "tok_secret"})

        resp = await client.get("/v1/projects/proj_1/streams")

        assert "tok_secret" not in await resp.text()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body,field",
        [
            ({}, "url"),
            ({"url": "ftp://siem.example.com/"}, "url"),
            ({"url": 42}, "url"),
            ({"url": URL, "token": ""}, "token"),
            ({"url": URL, "token": "has space"}, "token"),
            ({"url": URL, "token": "t\u00f6k"}, "token"),
        ],
    )
    async def test_invalid_config_is_400(self, client, services, body, field):
        resp = await client.post("/v1/projects/proj_1/streams", json=body)

        assert resp.status == 400
        error = await resp.json()
        assert error["error_code"] == "VALIDATION_ERROR"
        assert error["field"] == field
        assert await services.registry.list("proj_1") == []

    @pytest.mark.asyncio
    async def test_non_object_body_is_400(self, client):
        resp = await client.post("/v1/projects/proj_1/streams", data="[1, 2]")
        assert resp.status == 400

        resp = await client.post("/v1/projects/proj_1/streams", data="not json")
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_list_streams(self, client):
        for host in ("a", "b"):
            await client.post(
                "/v1/projects/proj_1/streams", json={"url": f"https://{host}.example.com/"}
            )
        await client.post("/v1/projects/proj_2/streams", json={"url": URL})

        resp = await client.get("/v1/projects/proj_1/streams")

        assert len((await resp.json())["streams"]) == 2

    @pytest.mark.asyncio
    async def test_patch_disables_and_keeps_url(self, client, services):
        created = await (
            await client.post("/v1/projects/proj_1/streams", json={"url": URL, "token": "tok"})
        ).json()

        resp = await client.patch(
            f"/v1/streams/{created['id']}", json={"project_id": "proj_1", "enabled": False}
        )

        assert resp.status == 200
        updated = await resp.json()
        assert updated["enabled"] is False
        assert updated["url"] == URL
        stored = await services.registry.get(created["id"])
        assert stored.token == "tok"

    @pytest.mark.asyncio
    async def test_patch_validation(self, client):
        created = await (
            await client.post("/v1/projects/proj_1/streams", json={"url": URL})
        ).json()
        path = f"/v1/streams/{created['id']}"

        assert (await client.patch(path, json={"enabled": False})).status == 400
        assert (
            await client.patch(path, json={"project_id": "proj_1", "enabled": "no"})
        ).status == 400
        assert (
            await client.patch(path, json={"project_id": "proj_1", "url": "nope"})
        ).status == 400
        assert (
            await client.patch(path, json={"project_id": "proj_2", "url": URL})
        ).status == 404

    @pytest.mark.asyncio
    async def test_delete(self, client):
        created = await (
            await client.post("/v1/projects/proj_1/streams", json={"url": URL})
        ).json()

        resp = await client.delete(f"/v1/streams/{created['id']}")
        assert resp.status == 200
        assert await resp.json() == {"id": created["id"], "deleted": True}

        resp = await client.get(f"/v1/streams/{created['id']}")
        assert resp.status == 404
        assert (await resp.json())["error_code"] == "NOT_FOUND"


class TestIngestEndpoint:
    """Tests for POST /v1/projects/{project_id}/events."""

    @pytest.mark.asyncio
    async def test_accepts_event(self, client, services):
        resp = await client.post(
            "/v1/projects/proj_1/events", json={"payload": {"action": "login"}}
        )

        assert resp.status == 202
        body = await resp.json()
        assert body["status"] == "accepted"
        assert body["sequence_number"] == 1
        assert services.buffer.depth("proj_1") == 1

    @pytest.mark.asyncio
    async def test_full_buffer_is_429(self, client):
        for _ in range(2):
            await client.post("/v1/projects/proj_1/events", json={"payload": {}})

        resp = await client.post("/v1/projects/proj_1/events", json={"payload": {}})

        assert resp.status == 429
        body = await resp.json()
        assert body["error_code"] == "BACKPRESSURE"
        assert body["reason"] == "queue_full"

    @pytest.mark.asyncio
    async def test_stale_sequence_is_429(self, client):
        await client.post(
            "/v1/projects/proj_1/events", json={"payload": {}, "sequence_number": 5}
        )

        resp = await client.post(
            "/v1/projects/proj_1/events", json={"payload": {}, "sequence_number": 3}
        )

        assert resp.status == 429
        assert (await resp.json())["reason"] == "stale_sequence"

    @pytest.mark.asyncio
    async def test_duplicate_event_id_is_429(self, client, services):
        await client.post(
            "/v1/projects/proj_1/events", json={"payload": {"n": 1}, "event_id": "evt_1"}
        )

        resp = await client.post(
            "/v1/projects/proj_1/events", json={"payload": {"n": 2}, "event_id": "evt_1"}
        )

        assert resp.status == 429
        assert (await resp.json())["reason"] == "duplicate_event"
        [buffered] = await services.buffer.dequeue_batch("proj_1", 10)
        assert buffered.event.payload == {"n": 1}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"payload": "text"},
            {"payload": {}, "sequence_number": "1"},
            {"payload": {}, "project_id": "proj_2"},
        ],
    )
    async def test_invalid_event_is_400(self, client, body):
        resp = await client.post("/v1/projects/proj_1/events", json=body)

        assert resp.status == 400


class TestDeadLetterEndpoints:
    """Tests for dead-letter operations."""

    @pytest.mark.asyncio
    async def test_list_redacts_payload(self, client, services):
        entry = await dead_letter(services)

        resp = await client.get("/v1/projects/proj_1/dead-letters")

        body = await resp.json()
        assert body["count"] == 1
        assert body["entries"][0]["entry_id"] == entry.entry_id
        assert body["entries"][0]["failure_history"][0]["status_code"] == 404
        assert "payload-value" not in await resp.text()

    @pytest.mark.asyncio
    async def test_list_with_payload_and_filter(self, client, services):
        await dead_letter(services, destination_id="dst_1")
        await dead_letter(services, destination_id="dst_2")

        resp = await client.get(
            "/v1/projects/proj_1/dead-letters",
            params={"destination_id": "dst_2", "include_payload": "true"},
        )

        body = await resp.json()
        assert body["count"] == 1
        assert body["entries"][0]["event"]["payload"]["secret"] == "payload-value"

    @pytest.mark.asyncio
    async def test_replay(self, client, services):
        entry = await dead_letter(services)

        resp = await client.post(f"/v1/dead-letters/{entry.entry_id}/replay")
        assert resp.status == 202
        body = await resp.json()
        assert body["status"] == "replaying"
        assert body["replay_count"] == 1
        assert services.buffer.depth("proj_1") == 1

        resp = await client.post(f"/v1/dead-letters/{entry.entry_id}/replay")
        assert resp.status == 409
        assert (await resp.json())["error_code"] == "REPLAY_IN_PROGRESS"

    @pytest.mark.asyncio
    async def test_replay_unknown_is_404(self, client):
        resp = await client.post("/v1/dead-letters/missing/replay")
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_purge_entry(self, client, services):
        entry = await dead_letter(services)

        resp = await client.delete(f"/v1/dead-letters/{entry.entry_id}")
        assert resp.status == 200
        assert await resp.json() == {"entry_id": entry.entry_id, "purged": True}

        resp = await client.delete(f"/v1/dead-letters/{entry.entry_id}")
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_purge_project(self, client, services):
        await dead_letter(services, destination_id="dst_1")
        await dead_letter(services, destination_id="dst_2")

        resp = await client.delete(
            "/v1/projects/proj_1/dead-letters", params={"destination_id": "dst_1"}
        )
        assert await resp.json() == {"purged": 1}

        resp = await client.delete("/v1/projects/proj_1/dead-letters")
        assert await resp.json() == {"purged": 1}


class TestOperationsEndpoints:
    """Tests for health and stats."""

    @pytest.mark.asyncio
    async def test_health_without_scheduler(self, client):
        resp = await client.get("/v1/health")

        assert resp.status == 200
        body = await resp.json()
        assert body["healthy"] is True
        assert body["scheduler_running"] is None

    @pytest.mark.asyncio
    async def test_health_reports_stopped_scheduler(self, make_engine):
        engine = make_engine()
        services = ApiServices(
            engine.registry, engine.buffer, engine.dead_letters, scheduler=engine.scheduler
        )
        client = test_utils.TestClient(test_utils.TestServer(create_http_app(services)))
        await client.start_server()
        try:
            resp = await client.get("/v1/health")
            body = await resp.json()
        finally:
            await client.close()

        assert resp.status == 503
        assert body["healthy"] is False

    @pytest.mark.asyncio
    async def test_stats(self, client):
        await client.post("/v1/projects/proj_1/events", json={"payload": {}})

        resp = await client.get("/v1/stats")

        body = await resp.json()
        assert body["buffer"]["accepted_count"] == 1
        assert body["dead_letters"]["recorded_count"] == 0
