"""Run 级日志上下文 — ContextVar + Filter。

通过 ``contextvars.ContextVar`` 标记当前 asyncio Task 正在处理的 run_id，
配合 ``RunContextFilter`` 把 run_id 写到每条日志记录上，格式串可直接使用
``%(run_id)s``。

用法：
    1. WebSocket 循环处理事件前调用 ``current_run_id.set(run_id)``
    2. 把 ``RunContextFilter`` 挂到需要输出 run_id 的 handler 上
"""

from __future__ import annotations

import contextvars
import logging

# 标记当前 asyncio task 所属的 run_id
current_run_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "current_run_id", default=""
)


class RunContextFilter(logging.Filter):
    """给日志记录附加 ``run_id`` 属性，始终放行。"""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.run_id = current_run_id.get("") or "-"
        return True
