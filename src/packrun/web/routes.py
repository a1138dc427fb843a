"""API routes — run WebSocket, inbound event handlers and REST endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from mutagent.runtime.log_store import LogEntry, LogStore

from packrun.runtime.run_logging import current_run_id
from packrun.runtime.services import RunServices
from packrun.web.connection import CLOSE, BroadcastHub
from packrun.web.dispatch import EventContext, EventDispatcher
from packrun.web.events import (
    CreateTestRunners,
    JoinRun,
    LeaveRun,
    RequestGaps,
    TestRunnerUpdate,
    UpdatePosition,
)
from packrun.web.serializers import serialize_gap_report, serialize_run_summary

logger = logging.getLogger(__name__)

router = APIRouter()

# Run WebSocket event dispatcher
events = EventDispatcher()


def _services(conn: Request | WebSocket) -> RunServices:
    return conn.app.state.services


# ---------------------------------------------------------------------------
# Run event handlers
# ---------------------------------------------------------------------------

@events.on(JoinRun)
async def handle_join_run(event: JoinRun, ctx: EventContext) -> None:
    current_run_id.set(event.run_id)
    await ctx.services.lifecycle.join(ctx.connection_id, event.run_id, event.runner_name)


@events.on(UpdatePosition)
async def handle_update_position(event: UpdatePosition, ctx: EventContext) -> None:
    run_id = ctx.run_id
    if run_id is None:
        logger.debug("Dropping position from unbound connection %s", ctx.connection_id)
        return
    await ctx.services.ingester.update_position(
        ctx.connection_id, run_id, event.latitude, event.longitude, event.speed,
    )


@events.on(TestRunnerUpdate)
async def handle_test_runner_update(event: TestRunnerUpdate, ctx: EventContext) -> None:
    run_id = ctx.run_id
    if run_id is None:
        return
    await ctx.services.ingester.update_test_runner(
        run_id, event.runner_id, event.runner_name, event.position, event.speed,
    )


@events.on(RequestGaps)
async def handle_request_gaps(event: RequestGaps, ctx: EventContext) -> None:
    run_id = ctx.run_id
    session = ctx.services.registry.get(run_id) if run_id else None
    if session is None:
        return
    report = await ctx.services.gaps.compute(session)
    ctx.reply("gaps-info", serialize_gap_report(report))


@events.on(CreateTestRunners)
async def handle_create_test_runners(event: CreateTestRunners, ctx: EventContext) -> None:
    created = await ctx.services.ingester.seed_test_runners(event.run_id, event.count)
    if created is None:
        logger.debug("create-test-runners for unknown run %s", event.run_id)


@events.on(LeaveRun)
async def handle_leave_run(event: LeaveRun, ctx: EventContext) -> None:
    await ctx.services.lifecycle.leave(ctx.connection_id, event.run_id)


# ---------------------------------------------------------------------------
# Run WebSocket
# ---------------------------------------------------------------------------

async def _pump(
    websocket: WebSocket,
    channel: asyncio.Queue,
    connection_id: str,
    hub: BroadcastHub,
) -> None:
    """Drain one connection's outbound channel onto its WebSocket."""
    while True:
        message = await channel.get()
        if message is CLOSE:
            try:
                await websocket.close(code=1001)
            except Exception:
                pass
            return
        try:
            await websocket.send_json(message)
        except Exception:
            logger.debug("Send failed, stopping sender for %s", connection_id)
            # nothing drains the channel any more
            hub.unregister(connection_id)
            return


def _decode_frame(message: dict) -> Any:
    """Text or UTF-8 binary frame → parsed JSON, None if undecodable."""
    text = message.get("text")
    if text is None:
        data = message.get("bytes")
        if data is None:
            return None
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        return json.loads(text)
    except ValueError:
        return None


@router.websocket("/ws")
async def websocket_run(websocket: WebSocket):
    """Event WebSocket for one runner.

    Inbound frames are handled one at a time in arrival order; outbound
    events go through the hub and a dedicated sender task.
    """
    services = _services(websocket)
    await websocket.accept()
    connection_id = uuid.uuid4().hex[:12]
    channel = services.hub.register(connection_id)
    sender = asyncio.create_task(_pump(websocket, channel, connection_id, services.hub))
    context = EventContext(connection_id=connection_id, services=services)
    logger.info("New client connected: %s", connection_id)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = _decode_frame(message)
            current_run_id.set(context.run_id or "")
            await events.dispatch(raw, context)
    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", connection_id)
    except Exception:
        logger.exception("WS error: connection=%s", connection_id)
    finally:
        await services.lifecycle.disconnect(connection_id)
        services.hub.unregister(connection_id)
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass


# ---------------------------------------------------------------------------
# Log tail WebSocket
# ---------------------------------------------------------------------------

LOG_POLL_INTERVAL = 0.2


def _log_frame(entry: LogEntry) -> dict[str, Any]:
    return {
        "type": "log",
        "timestamp": entry.timestamp,
        "level": entry.level,
        "logger": entry.logger_name,
        "message": entry.message,
    }


@router.websocket("/ws/logs")
async def websocket_logs(websocket: WebSocket, level: str = "DEBUG", backlog: int = 0):
    """Tail the server's in-memory log store.

    ``backlog`` replays that many recent entries first, after that only new
    entries are sent.  Entries below ``level`` are skipped.  Inbound frames
    are ignored; the loop waits on them so a disconnect is seen promptly.
    """
    await websocket.accept()
    store: LogStore | None = getattr(websocket.app.state, "log_store", None)
    if store is None:
        await websocket.close(code=4500, reason="log store not available")
        return

    min_level = logging.getLevelName(level.upper())
    if not isinstance(min_level, int):
        min_level = logging.DEBUG
    cursor = store.count()
    # query() is newest-first
    pending = list(reversed(store.query(level=level, limit=backlog))) if backlog > 0 else []

    try:
        while True:
            for entry in pending:
                await websocket.send_json(_log_frame(entry))
            try:
                message = await asyncio.wait_for(websocket.receive(), timeout=LOG_POLL_INTERVAL)
            except asyncio.TimeoutError:
                message = None
            if message is not None and message["type"] == "websocket.disconnect":
                break
            total = store.count()
            fresh = store.query(limit=total - cursor) if total > cursor else []
            cursor = total
            pending = [
                e for e in reversed(fresh)
                if logging.getLevelName(e.level) >= min_level
            ]
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Log WS error")


# ---------------------------------------------------------------------------
# REST endpoints (tooling / debugging)
# ---------------------------------------------------------------------------

@router.get("/runs")
async def list_runs(request: Request) -> dict[str, Any]:
    """列出所有进行中的 run 及其 runner"""
    registry = _services(request).registry
    return {"runs": [serialize_run_summary(s) for s in registry.list_all()]}


@router.post("/test-runners/{run_id}")
async def create_test_runners(
    run_id: str,
    request: Request,
    count: int = Query(4, ge=0),
) -> dict[str, Any]:
    """在已有 run 中生成 test runner"""
    services = _services(request)
    created = await services.ingester.seed_test_runners(run_id, count)
    if created is None:
        raise HTTPException(status_code=404, detail="Run not found")
    session = services.registry.get(run_id)
    return {
        "message": f"Created {len(created)} test runners",
        "runners": [{"runnerId": r.id, "runnerName": r.name} for r in created],
        "totalRunners": len(session.runners) if session else 0,
    }


@router.get("/runs/{run_id}/gaps")
async def get_run_gaps(run_id: str, request: Request) -> dict[str, Any]:
    services = _services(request)
    session = services.registry.get(run_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Run not found")
    report = await services.gaps.compute(session)
    return serialize_gap_report(report)
