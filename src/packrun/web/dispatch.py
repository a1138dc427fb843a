"""WebSocket 事件分发 — 按事件类型分发到对应 handler。

每条入站帧先经 ``parse_event`` 变成类型化事件，再按事件类分发：
- 格式错误：记录警告，仅回复发送方一条 ``error`` 事件，不广播
- handler 异常：记录异常，同样回复 ``error``，连接保持
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from packrun.runtime.services import RunServices
from packrun.web.events import EVENT_NAMES, InboundEvent, MalformedEvent, parse_event

logger = logging.getLogger(__name__)

# Handler 类型：接收 (event, context)
EventHandler = Callable[[Any, "EventContext"], Awaitable[None]]


@dataclass
class EventContext:
    """事件处理上下文，传递给每个 handler"""

    connection_id: str
    services: RunServices

    @property
    def run_id(self) -> str | None:
        """当前连接绑定的 run（未加入时为 None）"""
        return self.services.lifecycle.run_for(self.connection_id)

    def reply(self, event: str, payload: dict) -> None:
        self.services.hub.emit_to_connection(self.connection_id, event, payload)


class EventDispatcher:
    """按事件类型分发入站事件到注册的 handler。

    用法::

        dispatcher = EventDispatcher()

        @dispatcher.on(JoinRun)
        async def handle_join(event, ctx):
            ...

        await dispatcher.dispatch(raw_message, context)
    """

    def __init__(self) -> None:
        self._handlers: dict[type, EventHandler] = {}

    def on(self, event_type: type) -> Callable[[EventHandler], EventHandler]:
        """装饰器：注册一个事件 handler"""
        def decorator(fn: EventHandler) -> EventHandler:
            self._handlers[event_type] = fn
            return fn
        return decorator

    @property
    def missing(self) -> list[str]:
        """尚未注册 handler 的事件名"""
        return [name for cls, name in EVENT_NAMES.items() if cls not in self._handlers]

    async def dispatch(self, message: Any, context: EventContext) -> InboundEvent | None:
        """处理一条入站帧，返回解析出的事件（格式错误时返回 None）。"""
        try:
            event = parse_event(message)
        except MalformedEvent as exc:
            logger.warning(
                "Malformed frame from %s: %s", context.connection_id, exc,
            )
            context.reply("error", {"event": exc.event, "message": str(exc)})
            return None

        handler = self._handlers.get(type(event))
        if handler is None:
            logger.error("No handler for %s", type(event).__name__)
            return None

        try:
            await handler(event, context)
        except Exception as exc:
            name = EVENT_NAMES[type(event)]
            logger.exception("Event handler error: event=%s", name)
            context.reply("error", {"event": name, "message": str(exc)})
        return event
