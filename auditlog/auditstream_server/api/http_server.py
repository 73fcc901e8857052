"""
HTTP API for AuditStream.

Routes:
    POST   /v1/projects/{project_id}/streams        create a stream destination
    GET    /v1/projects/{project_id}/streams        list a project's destinations
    GET    /v1/streams/{stream_id}                  get one destination
    PATCH  /v1/streams/{stream_id}                  update url/token/enabled
    DELETE /v1/streams/{stream_id}                  delete a destination
    POST   /v1/projects/{project_id}/events         ingest an audit event
    GET    /v1/projects/{project_id}/dead-letters   list dead-letter entries
    DELETE /v1/projects/{project_id}/dead-letters   purge dead-letter entries
    POST   /v1/dead-letters/{entry_id}/replay       replay one entry
    DELETE /v1/dead-letters/{entry_id}              purge one entry
    GET    /v1/health                               health check
    GET    /v1/stats                                component counters

Invariants:
    - Tokens are write-only: responses carry has_token, never the token
    - Dead-letter payloads are only returned with include_payload=true
    - Errors are JSON {"error", "error_code", ...} with a stable code

How to change safely:
    - Map new AuditStreamError codes in ERROR_STATUS
    - Keep ingest returning 429 for every dropped event so producers back off
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from aiohttp import web

from .._version import __version__
from ..buffer.event_buffer import AuditEvent, EventBuffer
from ..deadletter.sink import DeadLetterSink
from ..delivery.worker import DeliveryWorker
from ..errors import AuditStreamError, ValidationError
from ..ingest.consumer import IngestConsumer
from ..registry.registry import StreamRegistry
from ..scheduler.scheduler import DeliveryScheduler

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[str, int] = {
    "VALIDATION_ERROR": 400,
    "NOT_FOUND": 404,
    "REPLAY_IN_PROGRESS": 409,
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@dataclass
class ApiServices:
    """Components the HTTP handlers operate on.

    Attributes:
        registry: Stream destination registry
        buffer: Event buffer for ingest
        dead_letters: Dead-letter sink
        scheduler: Delivery scheduler (health and stats only)
        worker: Delivery worker (stats only)
        consumer: Kafka ingest consumer, if configured (stats only)
    """

    registry: StreamRegistry
    buffer: EventBuffer
    dead_letters: DeadLetterSink
    scheduler: DeliveryScheduler | None = None
    worker: DeliveryWorker | None = None
    consumer: IngestConsumer | None = None


def create_http_app(services: ApiServices) -> web.Application:
    """Create the aiohttp application.

    Args:
        services: Components to expose

    Returns:
        aiohttp Application instance
    """

    @web.middleware
    async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except AuditStreamError as e:
            status = ERROR_STATUS.get(e.code, 500)
            if status == 500:
                logger.error(f"Unmapped error in HTTP handler: {e}", exc_info=True)
            return web.json_response(e.to_dict(), status=status)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": "internal error", "error_code": "INTERNAL"},
                status=500,
            )

    app = web.Application(middlewares=[error_middleware])

    routes = [
        ("POST", "/v1/projects/{project_id}/streams", handle_create_stream),
        ("GET", "/v1/projects/{project_id}/streams", handle_list_streams),
        ("GET", "/v1/streams/{stream_id}", handle_get_stream),
        ("PATCH", "/v1/streams/{stream_id}", handle_update_stream),
        ("DELETE", "/v1/streams/{stream_id}", handle_delete_stream),
        ("POST", "/v1/projects/{project_id}/events", handle_ingest),
        ("GET", "/v1/projects/{project_id}/dead-letters", handle_list_dead_letters),
        ("DELETE", "/v1/projects/{project_id}/dead-letters", handle_purge_dead_letters),
        ("POST", "/v1/dead-letters/{entry_id}/replay", handle_replay),
        ("DELETE", "/v1/dead-letters/{entry_id}", handle_purge_entry),
        ("GET", "/v1/health", handle_health),
        ("GET", "/v1/stats", handle_stats),
    ]
    for method, path, handler in routes:
        app.router.add_route(method, path, partial(handler, services=services))

    return app


async def read_json_object(request: web.Request) -> dict[str, Any]:
    """Parse the request body as a JSON object.

    Raises:
        ValidationError: If the body is not a JSON object
    """
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("body", "must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("body", "must be a JSON object")
    return body


def _optional_str(body: dict[str, Any], field: str) -> str | None:
    value = body.get(field)
    if value is not None and not isinstance(value, str):
        raise ValidationError(field, "must be a string")
    return value


def _query_flag(request: web.Request, name: str) -> bool:
    return request.query.get(name, "").lower() in ("1", "true", "yes")


# ── Stream destinations ───────────────────────────────────────────────


async def handle_create_stream(request: web.Request, services: ApiServices) -> web.Response:
    """Handle POST /v1/projects/{project_id}/streams."""
    project_id = request.match_info["project_id"]
    body = await read_json_object(request)

    url = _optional_str(body, "url")
    if url is None:
        raise ValidationError("url", "is required")

    destination = await services.registry.create(
        project_id, url, token=_optional_str(body, "token")
    )
    return web.json_response(destination.to_dict(), status=201)


async def handle_list_streams(request: web.Request, services: ApiServices) -> web.Response:
    """Handle GET /v1/projects/{project_id}/streams."""
    destinations = await services.registry.list(request.match_info["project_id"])
    return web.json_response({"streams": [d.to_dict() for d in destinations]})


async def handle_get_stream(request: web.Request, services: ApiServices) -> web.Response:
    """Handle GET /v1/streams/{stream_id}."""
    destination = await services.registry.get(request.match_info["stream_id"])
    return web.json_response(destination.to_dict())


async def handle_update_stream(request: web.Request, services: ApiServices) -> web.Response:
    """Handle PATCH /v1/streams/{stream_id}.

    Body: {"project_id", "url"?, "token"?, "enabled"?}. Omitted fields keep
    their stored value.
    """
    stream_id = request.match_info["stream_id"]
    body = await read_json_object(request)

    project_id = _optional_str(body, "project_id")
    if not project_id:
        raise ValidationError("project_id", "is required")
    enabled = body.get("enabled")
    if enabled is not None and not isinstance(enabled, bool):
        raise ValidationError("enabled", "must be a boolean")

    url = _optional_str(body, "url")
    if url is None:
        url = (await services.registry.get(stream_id)).url

    destination = await services.registry.update(
        stream_id,
        project_id,
        url,
        token=_optional_str(body, "token"),
        enabled=enabled,
    )
    return web.json_response(destination.to_dict())


async def handle_delete_stream(request: web.Request, services: ApiServices) -> web.Response:
    """Handle DELETE /v1/streams/{stream_id}."""
    destination = await services.registry.delete(request.match_info["stream_id"])
    return web.json_response({"id": destination.id, "deleted": True})


# ── Ingest ────────────────────────────────────────────────────────────


async def handle_ingest(request: web.Request, services: ApiServices) -> web.Response:
    """Handle POST /v1/projects/{project_id}/events.

    Returns 202 when the event is buffered and 429 when the buffer drops it.
    """
    project_id = request.match_info["project_id"]
    body = await read_json_object(request)

    if body.setdefault("project_id", project_id) != project_id:
        raise ValidationError("project_id", "does not match the request path")
    try:
        event = AuditEvent.from_dict(body)
    except (ValueError, TypeError) as e:
        raise ValidationError("event", str(e))

    result = await services.buffer.enqueue(event)
    if result.accepted:
        return web.json_response(result.to_dict(), status=202)

    return web.json_response(
        {
            "error": "event dropped by buffer",
            "error_code": "BACKPRESSURE",
            **result.to_dict(),
        },
        status=429,
    )


# ── Dead letters ──────────────────────────────────────────────────────


async def handle_list_dead_letters(request: web.Request, services: ApiServices) -> web.Response:
    """Handle GET /v1/projects/{project_id}/dead-letters."""
    include_payload = _query_flag(request, "include_payload")
    entries = await services.dead_letters.list(
        request.match_info["project_id"], request.query.get("destination_id") or None
    )
    return web.json_response(
        {
            "entries": [e.to_dict(include_payload=include_payload) for e in entries],
            "count": len(entries),
        }
    )


async def handle_purge_dead_letters(request: web.Request, services: ApiServices) -> web.Response:
    """Handle DELETE /v1/projects/{project_id}/dead-letters."""
    count = await services.dead_letters.purge(
        request.match_info["project_id"], request.query.get("destination_id") or None
    )
    return web.json_response({"purged": count})


async def handle_replay(request: web.Request, services: ApiServices) -> web.Response:
    """Handle POST /v1/dead-letters/{entry_id}/replay."""
    entry = await services.dead_letters.replay(request.match_info["entry_id"])
    return web.json_response(entry.to_dict(), status=202)


async def handle_purge_entry(request: web.Request, services: ApiServices) -> web.Response:
    """Handle DELETE /v1/dead-letters/{entry_id}."""
    entry_id = request.match_info["entry_id"]
    await services.dead_letters.purge_entry(entry_id)
    return web.json_response({"entry_id": entry_id, "purged": True})


# ── Operations ────────────────────────────────────────────────────────


async def handle_health(request: web.Request, services: ApiServices) -> web.Response:
    """Handle GET /v1/health."""
    scheduler_running = services.scheduler.stats["running"] if services.scheduler else None
    healthy = scheduler_running is not False
    return web.json_response(
        {
            "healthy": healthy,
            "version": __version__,
            "scheduler_running": scheduler_running,
            "buffered_events": services.buffer.total_depth(),
        },
        status=200 if healthy else 503,
    )


async def handle_stats(request: web.Request, services: ApiServices) -> web.Response:
    """Handle GET /v1/stats."""
    stats: dict[str, Any] = {
        "buffer": services.buffer.stats,
        "dead_letters": services.dead_letters.stats,
    }
    if services.scheduler:
        stats["scheduler"] = services.scheduler.stats
    if services.worker:
        stats["worker"] = services.worker.stats
    if services.consumer:
        stats["ingest"] = services.consumer.stats
    return web.json_response(stats)


async def start_http_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Bind and start the HTTP server.

    Returns:
        The runner; call runner.cleanup() to stop serving
    """
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"HTTP server running on http://{host}:{port}")
    return runner
