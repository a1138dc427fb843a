"""Broadcast hub — per-connection send channels and run rooms."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)

# Pushed onto a channel to tell its sender task to stop.
CLOSE = None


def make_event(event: str, data: dict | None = None) -> dict:
    """构造一条服务端推送事件消息"""
    return {"type": "event", "event": event, "data": data or {}}


class BroadcastHub:
    """Fans outbound events out to the connections bound to a run.

    Every connection owns an unbounded ``asyncio.Queue``; emitting only
    enqueues, so it never blocks and can be called while a session lock is
    held.  A sender task per WebSocket drains its queue in order.
    """

    def __init__(self) -> None:
        self._channels: dict[str, asyncio.Queue] = {}
        self._rooms: dict[str, set[str]] = {}

    def register(self, connection_id: str) -> asyncio.Queue:
        channel: asyncio.Queue = asyncio.Queue()
        self._channels[connection_id] = channel
        return channel

    def unregister(self, connection_id: str) -> None:
        self._channels.pop(connection_id, None)
        for run_id in [r for r, members in self._rooms.items() if connection_id in members]:
            self.leave(connection_id, run_id)

    def join(self, connection_id: str, run_id: str) -> None:
        self._rooms.setdefault(run_id, set()).add(connection_id)

    def leave(self, connection_id: str, run_id: str) -> None:
        members = self._rooms.get(run_id)
        if members:
            members.discard(connection_id)
            if not members:
                del self._rooms[run_id]

    def members(self, run_id: str) -> set[str]:
        return set(self._rooms.get(run_id, ()))

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._channels

    def emit_to_session(
        self,
        run_id: str,
        event: str,
        payload: dict[str, Any],
        exclude: str | None = None,
    ) -> int:
        """Deliver to every member of the run except ``exclude``.

        Returns the number of channels the event was placed on.
        """
        message = make_event(event, payload)
        delivered = 0
        for connection_id in list(self._rooms.get(run_id, ())):
            if connection_id == exclude:
                continue
            if self._put(connection_id, message):
                delivered += 1
        return delivered

    def emit_to_connection(self, connection_id: str, event: str, payload: dict[str, Any]) -> bool:
        return self._put(connection_id, make_event(event, payload))

    def close_all(self) -> None:
        for channel in self._channels.values():
            channel.put_nowait(CLOSE)
        self._channels.clear()
        self._rooms.clear()

    def _put(self, connection_id: str, message: dict) -> bool:
        channel = self._channels.get(connection_id)
        if channel is None:
            logger.debug("Dropping %s for gone connection %s", message["event"], connection_id)
            return False
        channel.put_nowait(message)
        return True
