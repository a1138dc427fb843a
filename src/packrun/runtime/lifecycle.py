"""Connection lifecycle — join / leave / disconnect and run cleanup."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from packrun.run import RunnerRecord, Session, utc_now
from packrun.runtime.registry import SessionRegistry
from packrun.web.connection import BroadcastHub
from packrun.web.serializers import serialize_runner

logger = logging.getLogger(__name__)


class ConnectionLifecycleManager:
    """Binds connections to runs.

    Owns the connection id → run id association table.  Leave and
    disconnect for connections that are not (or no longer) bound are silent
    no-ops: a disconnecting client routinely sends duplicate or late events.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        hub: BroadcastHub,
        *,
        purge_test_runners: bool = True,
    ) -> None:
        self._registry = registry
        self._hub = hub
        self._bindings: dict[str, str] = {}
        self.purge_test_runners = purge_test_runners

    def run_for(self, connection_id: str) -> str | None:
        return self._bindings.get(connection_id)

    async def join(self, connection_id: str, run_id: str, runner_name: str) -> dict[str, Any]:
        """Add the connection to ``run_id`` and return the ``run-info`` payload."""
        previous = self._bindings.get(connection_id)
        if previous is not None and previous != run_id:
            await self.leave(connection_id, previous)

        while True:
            session = self._registry.get_or_create(run_id)
            async with session.lock:
                if session.closed:
                    # emptied and dropped while we waited for the lock
                    continue
                now = utc_now()
                session.runners[connection_id] = RunnerRecord(
                    id=connection_id,
                    name=runner_name,
                    joined_at=now,
                    last_update=now,
                )
                self._bindings[connection_id] = run_id
                self._hub.join(connection_id, run_id)

                total = len(session.runners)
                self._hub.emit_to_session(run_id, "runner-joined", {
                    "runnerId": connection_id,
                    "runnerName": runner_name,
                    "totalRunners": total,
                }, exclude=connection_id)
                run_info = {
                    "runId": run_id,
                    "runners": [serialize_runner(r) for r in session.runners.values()],
                    "totalRunners": total,
                }
                self._hub.emit_to_connection(connection_id, "run-info", run_info)
                break

        logger.info("%s joined run %s", runner_name, run_id)
        return run_info

    async def leave(self, connection_id: str, run_id: str) -> bool:
        if self._bindings.get(connection_id) != run_id:
            return False
        return await self._remove(connection_id, run_id)

    async def disconnect(self, connection_id: str) -> bool:
        run_id = self._bindings.get(connection_id)
        if run_id is None:
            return False
        return await self._remove(connection_id, run_id)

    async def evict_stale(self, max_age: float) -> int:
        """Remove runners that have not updated for ``max_age`` seconds."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age)
        evicted = 0
        for session in self._registry.list_all():
            async with session.lock:
                stale = [
                    r for r in session.runners.values()
                    if datetime.fromisoformat(r.last_update) < cutoff
                ]
                for runner in stale:
                    del session.runners[runner.id]
                    if self._bindings.get(runner.id) == session.id:
                        del self._bindings[runner.id]
                        self._hub.leave(runner.id, session.id)
                    self._announce_left(session, runner)
                    evicted += 1
                if stale:
                    self._purge_orphaned_test_runners(session)
            if stale:
                logger.info("Evicted %d stale runner(s) from run %s", len(stale), session.id)
                await self._registry.remove_if_empty(session.id)
        return evicted

    async def _remove(self, connection_id: str, run_id: str) -> bool:
        del self._bindings[connection_id]
        self._hub.leave(connection_id, run_id)

        session = self._registry.get(run_id)
        if session is None:
            return False
        async with session.lock:
            runner = session.runners.pop(connection_id, None)
            if runner is None:
                return False
            self._announce_left(session, runner)
            self._purge_orphaned_test_runners(session)

        logger.info("%s left run %s (%d remaining)", runner.name, run_id, len(session.runners))
        await self._registry.remove_if_empty(run_id)
        return True

    def _announce_left(self, session: Session, runner: RunnerRecord) -> None:
        self._hub.emit_to_session(session.id, "runner-left", {
            "runnerId": runner.id,
            "runnerName": runner.name,
            "totalRunners": len(session.runners),
        })

    def _purge_orphaned_test_runners(self, session: Session) -> None:
        # Caller holds session.lock.
        if not self.purge_test_runners or not session.runners:
            return
        if session.live_runner_count() == 0:
            logger.info(
                "Dropping %d test runner(s) from run %s: no live runners left",
                len(session.runners), session.id,
            )
            session.runners.clear()
