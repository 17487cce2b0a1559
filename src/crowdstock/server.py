"""aiohttp application exposing report submission and the query surface.

Routes
------
``POST /reports``
    Submit one report.  ``201`` with the updated aggregate, ``400`` for
    invalid reports, ``409`` for duplicate submissions.
``GET /status/{entity_key}`` / ``GET /status?key=..&key=..``
    Projected status for one or many entities.  Optional ``as_of``.
``GET /locations/{location_id}``
    Every tracked item at one location.
``GET /reports/recent?limit=N`` / ``GET /reports/stats``
    Recent reports feed and its counters.
``GET /events``
    Server-sent change events, optionally filtered by ``location_id`` or
    repeated ``key`` parameters.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

from aiohttp import web

from crowdstock.engine import AggregationEngine
from crowdstock.exceptions import DuplicateSubmission, HistoryLogError, InvalidReport
from crowdstock.models._base import parse_timestamp
from crowdstock.notifier import Predicate, for_entity, for_location

_logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", AggregationEngine)


def _engine(request: web.Request) -> AggregationEngine:
    return request.app[ENGINE_KEY]


def _error(status: int, error: str, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": error, "message": message, **extra}, status=status)


def _as_of(request: web.Request) -> datetime | None:
    raw = request.query.get("as_of")
    if raw is None or not raw.strip():
        return None
    value: Any = raw.strip()
    try:
        value = float(value)
    except ValueError:
        pass
    parsed = parse_timestamp(value)
    if not isinstance(parsed, datetime):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "invalid_as_of", "message": f"Cannot parse as_of={raw!r}"}),
            content_type="application/json",
        )
    return parsed


async def submit_report(request: web.Request) -> web.Response:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return _error(400, "invalid_report", "Request body must be JSON")
    if not isinstance(body, dict):
        return _error(400, "invalid_report", "Request body must be a JSON object")

    # Submits may wait on a per-key lock and write the history file; keep them off the loop.
    loop = asyncio.get_running_loop()
    try:
        aggregate, changed = await loop.run_in_executor(None, _engine(request).submit, body)
    except DuplicateSubmission as exc:
        return _error(409, "duplicate_submission", str(exc), retry_after=round(exc.retry_after, 3))
    except InvalidReport as exc:
        return _error(400, "invalid_report", str(exc), field=exc.field)
    except HistoryLogError as exc:
        _logger.error("History write failed: %s", exc)
        return _error(503, "history_unavailable", "Report could not be stored, retry later")

    return web.json_response({"aggregate": aggregate.model_dump(mode="json"), "changed": changed}, status=201)


async def get_status(request: web.Request) -> web.Response:
    engine = _engine(request)
    as_of = _as_of(request)
    try:
        view = engine.query.status_of(request.match_info["entity_key"], as_of)
    except InvalidReport as exc:
        return _error(400, "invalid_entity_key", str(exc))
    return web.json_response(view.model_dump(mode="json"))


async def get_statuses(request: web.Request) -> web.Response:
    engine = _engine(request)
    keys = request.query.getall("key", [])
    if not keys:
        return _error(400, "missing_key", "At least one 'key' query parameter is required")
    as_of = _as_of(request)
    try:
        views = engine.query.status_of_many(keys, as_of)
    except InvalidReport as exc:
        return _error(400, "invalid_entity_key", str(exc))
    return web.json_response({"statuses": [view.model_dump(mode="json") for view in views.values()]})


async def get_location(request: web.Request) -> web.Response:
    engine = _engine(request)
    location_id = request.match_info["location_id"]
    views = engine.query.status_for_location(location_id, _as_of(request))
    return web.json_response(
        {"location_id": location_id, "items": [view.model_dump(mode="json") for view in views]}
    )


async def get_recent_reports(request: web.Request) -> web.Response:
    engine = _engine(request)
    try:
        limit = int(request.query.get("limit", engine.config.recent_reports_limit))
    except ValueError:
        return _error(400, "invalid_limit", "limit must be an integer")
    recent = engine.query.recent_reports(limit=limit, as_of=_as_of(request))
    # Submitter tokens are for de-duplication only and never leave the process.
    return web.json_response(
        {"reports": [item.model_dump(mode="json", exclude={"report": {"submitter_token"}}) for item in recent]}
    )


async def get_report_stats(request: web.Request) -> web.Response:
    stats = _engine(request).query.report_stats(_as_of(request))
    return web.json_response(stats.model_dump(mode="json"))


def _event_predicate(request: web.Request) -> Predicate | None:
    location_id = request.query.get("location_id")
    keys = request.query.getall("key", [])
    if keys:
        return for_entity(*keys)
    if location_id:
        return for_location(location_id)
    return None


async def stream_events(request: web.Request) -> web.StreamResponse:
    engine = _engine(request)
    try:
        predicate = _event_predicate(request)
    except InvalidReport as exc:
        return _error(400, "invalid_entity_key", str(exc))

    # Subscribe before the headers go out so no event after them is missed.
    subscription = engine.subscribe(predicate, name=f"sse-{request.remote}")
    response = web.StreamResponse(
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
        }
    )
    try:
        await response.prepare(request)
        async for event in subscription:
            data = json.dumps(event.payload(), separators=(",", ":"))
            # Sequences are per entity, so the key is part of the event id.
            event_id = f"{event.entity_key}#{event.sequence}"
            await response.write(f"id: {event_id}\nevent: change\ndata: {data}\n\n".encode())
    except ConnectionResetError:
        _logger.debug("SSE client %s disconnected", request.remote)
    finally:
        subscription.close()
    return response


def create_app(engine: AggregationEngine) -> web.Application:
    """Build the HTTP application around *engine*."""
    app = web.Application()
    app[ENGINE_KEY] = engine
    app.router.add_post("/reports", submit_report)
    app.router.add_get("/reports/recent", get_recent_reports)
    app.router.add_get("/reports/stats", get_report_stats)
    app.router.add_get("/status", get_statuses)
    app.router.add_get("/status/{entity_key}", get_status)
    app.router.add_get("/locations/{location_id}", get_location)
    app.router.add_get("/events", stream_events)

    async def _on_shutdown(_app: web.Application) -> None:
        engine.close()

    app.on_shutdown.append(_on_shutdown)
    return app
