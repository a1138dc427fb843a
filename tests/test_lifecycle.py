"""测试 ConnectionLifecycleManager

涵盖：
- join：创建 run、runner-joined 广播（不含发送方）、run-info 单播
- 同一连接重复 join 同一 run（幂等）
- 切换 run
- leave / disconnect：runner-left 广播、run 清理时机
- 未知连接 / 重复事件为静默 no-op
- 最后一个真实 runner 离开时清理 test runner
- 长时间无更新的 runner 清理（evict_stale）
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from packrun.run import Position, RunnerRecord
from packrun.runtime.lifecycle import ConnectionLifecycleManager
from packrun.runtime.registry import SessionRegistry
from packrun.web.connection import BroadcastHub


def _drain(channel: asyncio.Queue) -> list[dict]:
    items = []
    while not channel.empty():
        items.append(channel.get_nowait())
    return items


def _events(channel: asyncio.Queue) -> list[str]:
    return [m["event"] for m in _drain(channel)]


def _make_manager(**kwargs) -> tuple[SessionRegistry, BroadcastHub, ConnectionLifecycleManager]:
    registry = SessionRegistry()
    hub = BroadcastHub()
    return registry, hub, ConnectionLifecycleManager(registry, hub, **kwargs)


# ---------------------------------------------------------------------------
# join
# ---------------------------------------------------------------------------

class TestJoin:

    @pytest.mark.asyncio
    async def test_first_join_creates_run(self):
        registry, hub, lm = _make_manager()
        ch = hub.register("c1")
        info = await lm.join("c1", "r1", "Alice")

        session = registry.get("r1")
        assert session is not None
        assert len(registry) == 1
        runner = session.runners["c1"]
        assert runner.name == "Alice"
        assert runner.position is None
        assert runner.speed == 0
        assert runner.joined_at
        assert runner.is_test is False
        assert lm.run_for("c1") == "r1"

        assert info["runId"] == "r1"
        assert info["totalRunners"] == 1
        messages = _drain(ch)
        assert [m["event"] for m in messages] == ["run-info"]
        assert messages[0]["data"] == info

    @pytest.mark.asyncio
    async def test_second_join_notifies_others_only(self):
        registry, hub, lm = _make_manager()
        ch1 = hub.register("c1")
        ch2 = hub.register("c2")
        await lm.join("c1", "r1", "Alice")
        _drain(ch1)

        info = await lm.join("c2", "r1", "Bob")

        assert len(registry) == 1
        assert info["totalRunners"] == 2
        assert {r["name"] for r in info["runners"]} == {"Alice", "Bob"}

        joined = _drain(ch1)
        assert joined == [{
            "type": "event",
            "event": "runner-joined",
            "data": {"runnerId": "c2", "runnerName": "Bob", "totalRunners": 2},
        }]
        assert _events(ch2) == ["run-info"]

    @pytest.mark.asyncio
    async def test_rejoin_same_run_is_idempotent(self):
        registry, hub, lm = _make_manager()
        hub.register("c1")
        await lm.join("c1", "r1", "Alice")
        await lm.join("c1", "r1", "Alice2")

        session = registry.get("r1")
        assert list(session.runners) == ["c1"]
        assert session.runners["c1"].name == "Alice2"

    @pytest.mark.asyncio
    async def test_join_other_run_leaves_previous(self):
        registry, hub, lm = _make_manager()
        hub.register("c1")
        await lm.join("c1", "r1", "Alice")
        await lm.join("c1", "r2", "Alice")

        assert registry.get("r1") is None
        assert "c1" in registry.get("r2").runners
        assert lm.run_for("c1") == "r2"
        assert hub.members("r1") == set()

    @pytest.mark.asyncio
    async def test_join_after_run_closed_gets_fresh_session(self):
        registry, hub, lm = _make_manager()
        hub.register("c1")
        stale = registry.get_or_create("r1")
        await registry.remove_if_empty("r1")

        await lm.join("c1", "r1", "Alice")
        session = registry.get("r1")
        assert session is not stale
        assert "c1" in session.runners


# ---------------------------------------------------------------------------
# leave / disconnect
# ---------------------------------------------------------------------------

class TestLeave:

    @pytest.mark.asyncio
    async def test_leave_broadcasts_and_keeps_run(self):
        registry, hub, lm = _make_manager()
        ch1 = hub.register("c1")
        hub.register("c2")
        await lm.join("c1", "r1", "Alice")
        await lm.join("c2", "r1", "Bob")
        _drain(ch1)

        assert await lm.leave("c2", "r1") is True

        assert registry.get("r1") is not None
        assert list(registry.get("r1").runners) == ["c1"]
        assert lm.run_for("c2") is None
        assert _drain(ch1) == [{
            "type": "event",
            "event": "runner-left",
            "data": {"runnerId": "c2", "runnerName": "Bob", "totalRunners": 1},
        }]

    @pytest.mark.asyncio
    async def test_leaver_does_not_receive_own_runner_left(self):
        _, hub, lm = _make_manager()
        ch1 = hub.register("c1")
        hub.register("c2")
        await lm.join("c1", "r1", "Alice")
        await lm.join("c2", "r1", "Bob")
        _drain(ch1)
        await lm.leave("c1", "r1")
        assert _drain(ch1) == []

    @pytest.mark.asyncio
    async def test_leave_wrong_run_is_noop(self):
        registry, hub, lm = _make_manager()
        hub.register("c1")
        await lm.join("c1", "r1", "Alice")
        assert await lm.leave("c1", "other") is False
        assert "c1" in registry.get("r1").runners

    @pytest.mark.asyncio
    async def test_leave_unknown_connection_is_noop(self):
        registry, _, lm = _make_manager()
        assert await lm.leave("ghost", "r1") is False
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_duplicate_leave_is_noop(self):
        _, hub, lm = _make_manager()
        hub.register("c1")
        await lm.join("c1", "r1", "Alice")
        assert await lm.leave("c1", "r1") is True
        assert await lm.leave("c1", "r1") is False


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_run_removed_only_after_last_disconnect(self):
        registry, hub, lm = _make_manager()
        ch1 = hub.register("c1")
        hub.register("c2")
        await lm.join("c1", "r1", "Alice")
        await lm.join("c2", "r1", "Bob")
        _drain(ch1)

        assert await lm.disconnect("c2") is True
        session = registry.get("r1")
        assert session is not None
        assert len(session.runners) == 1
        assert _drain(ch1)[0]["data"]["totalRunners"] == 1

        assert await lm.disconnect("c1") is True
        assert registry.get("r1") is None
        assert len(registry) == 0
        assert session.closed is True

    @pytest.mark.asyncio
    async def test_disconnect_unknown_connection(self):
        registry, _, lm = _make_manager()
        assert await lm.disconnect("ghost") is False
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_disconnect_after_leave(self):
        registry, hub, lm = _make_manager()
        hub.register("c1")
        await lm.join("c1", "r1", "Alice")
        await lm.leave("c1", "r1")
        assert await lm.disconnect("c1") is False
        assert len(registry) == 0


# ---------------------------------------------------------------------------
# test runner 清理
# ---------------------------------------------------------------------------

def _add_test_runner(session, rid: str = "test-runner-1") -> None:
    session.runners[rid] = RunnerRecord(
        id=rid, name="Sam", position=Position(37.78, -122.42), is_test=True,
    )


class TestTestRunnerPurge:

    @pytest.mark.asyncio
    async def test_last_live_runner_takes_test_runners_along(self):
        registry, hub, lm = _make_manager()
        hub.register("c1")
        await lm.join("c1", "r1", "Alice")
        _add_test_runner(registry.get("r1"))

        await lm.disconnect("c1")
        assert registry.get("r1") is None

    @pytest.mark.asyncio
    async def test_test_runners_kept_while_live_runner_remains(self):
        registry, hub, lm = _make_manager()
        hub.register("c1")
        hub.register("c2")
        await lm.join("c1", "r1", "Alice")
        await lm.join("c2", "r1", "Bob")
        _add_test_runner(registry.get("r1"))

        await lm.disconnect("c1")
        assert set(registry.get("r1").runners) == {"c2", "test-runner-1"}

    @pytest.mark.asyncio
    async def test_purge_disabled(self):
        registry, hub, lm = _make_manager(purge_test_runners=False)
        hub.register("c1")
        await lm.join("c1", "r1", "Alice")
        _add_test_runner(registry.get("r1"))

        await lm.disconnect("c1")
        assert list(registry.get("r1").runners) == ["test-runner-1"]


# ---------------------------------------------------------------------------
# evict_stale
# ---------------------------------------------------------------------------

class TestEvictStale:

    @pytest.mark.asyncio
    async def test_evicts_only_stale_runners(self):
        registry, hub, lm = _make_manager()
        ch1 = hub.register("c1")
        hub.register("c2")
        await lm.join("c1", "r1", "Alice")
        await lm.join("c2", "r1", "Bob")
        _drain(ch1)
        old = (datetime.now(timezone.utc) - timedelta(minutes=10)).isoformat()
        registry.get("r1").runners["c2"].last_update = old

        assert await lm.evict_stale(60) == 1
        assert list(registry.get("r1").runners) == ["c1"]
        assert lm.run_for("c2") is None
        assert _events(ch1) == ["runner-left"]

    @pytest.mark.asyncio
    async def test_evicting_everyone_ends_run(self):
        registry, hub, lm = _make_manager()
        hub.register("c1")
        await lm.join("c1", "r1", "Alice")
        old = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        registry.get("r1").runners["c1"].last_update = old

        assert await lm.evict_stale(60) == 1
        assert registry.get("r1") is None

    @pytest.mark.asyncio
    async def test_fresh_runners_untouched(self):
        registry, hub, lm = _make_manager()
        hub.register("c1")
        await lm.join("c1", "r1", "Alice")
        assert await lm.evict_stale(60) == 0
        assert "c1" in registry.get("r1").runners


# ---------------------------------------------------------------------------
# 并发：session 锁串行化
# ---------------------------------------------------------------------------

class TestConcurrentJoin:

    @pytest.mark.asyncio
    async def test_gathered_joins_create_one_session(self):
        registry, hub, lm = _make_manager()
        for i in range(5):
            hub.register(f"c{i}")
        infos = await asyncio.gather(*(lm.join(f"c{i}", "r1", f"R{i}") for i in range(5)))

        assert len(registry) == 1
        assert set(registry.get("r1").runners) == {f"c{i}" for i in range(5)}
        assert sorted(info["totalRunners"] for info in infos) == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_joins_queued_on_lock_apply_in_order(self):
        registry, hub, lm = _make_manager()
        session = registry.get_or_create("r1")
        for i in range(3):
            hub.register(f"c{i}")

        async with session.lock:
            tasks = [asyncio.create_task(lm.join(f"c{i}", "r1", f"R{i}")) for i in range(3)]
            await asyncio.sleep(0)
            assert session.runners == {}
        infos = await asyncio.gather(*tasks)

        assert registry.get("r1") is session
        assert [info["totalRunners"] for info in infos] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_join_racing_removal_gets_fresh_session(self):
        registry, hub, lm = _make_manager()
        hub.register("c1")
        stale = registry.get_or_create("r1")

        async with stale.lock:
            removal = asyncio.create_task(registry.remove_if_empty("r1"))
            await asyncio.sleep(0)
            join = asyncio.create_task(lm.join("c1", "r1", "Alice"))
            await asyncio.sleep(0)
        removed, _ = await asyncio.gather(removal, join)

        assert removed is True
        assert stale.closed is True
        assert stale.runners == {}
        fresh = registry.get("r1")
        assert fresh is not stale
        assert "c1" in fresh.runners
