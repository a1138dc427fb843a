"""Position ingestion — live updates, synthetic (test) runners."""

from __future__ import annotations

import logging
import random
import uuid

from packrun.run import Position, RunnerRecord, utc_now
from packrun.runtime.config import DEFAULT_TEST_NAMES
from packrun.runtime.registry import SessionRegistry
from packrun.web.connection import BroadcastHub
from packrun.web.serializers import serialize_runner_update

logger = logging.getLogger(__name__)

# Seed area for synthetic runners (San Francisco, ~2km square)
SEED_LATITUDE = 37.77
SEED_LONGITUDE = -122.43
SEED_SPAN_DEGREES = 0.02
SEED_MIN_SPEED = 3.0
SEED_SPEED_SPAN = 2.0


class PositionIngester:
    """Applies position updates to runner records and broadcasts them.

    Every mutation happens under the session lock and is enqueued on the
    hub before the lock is released, so the updates of one runner reach
    each client in the order they were applied.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        hub: BroadcastHub,
        *,
        test_names: list[str] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._registry = registry
        self._hub = hub
        self.test_names = list(test_names or DEFAULT_TEST_NAMES)
        self._rng = rng or random.Random()

    async def update_position(
        self,
        connection_id: str,
        run_id: str,
        latitude: float,
        longitude: float,
        speed: float | None = None,
    ) -> bool:
        session = self._registry.get(run_id)
        if session is None:
            return False
        async with session.lock:
            runner = session.runners.get(connection_id)
            if runner is None or session.closed:
                return False
            runner.position = Position(latitude, longitude)
            runner.speed = speed or 0.0
            runner.last_update = utc_now()
            self._hub.emit_to_session(
                run_id, "runner-updated", serialize_runner_update(runner),
                exclude=connection_id,
            )
        return True

    async def update_test_runner(
        self,
        run_id: str,
        runner_id: str,
        name: str,
        position: Position,
        speed: float | None = None,
    ) -> bool:
        session = self._registry.get(run_id)
        if session is None:
            return False
        async with session.lock:
            if session.closed:
                return False
            now = utc_now()
            runner = session.runners.get(runner_id)
            if runner is None:
                runner = RunnerRecord(id=runner_id, name=name, joined_at=now, is_test=True)
                session.runners[runner_id] = runner
            runner.name = name
            runner.position = position
            runner.speed = speed or 0.0
            runner.last_update = now
            # no sender to suppress: the observing client wants its own test runners too
            self._hub.emit_to_session(run_id, "runner-updated", serialize_runner_update(runner))
        logger.debug("Test runner %s updated position", name)
        return True

    async def seed_test_runners(self, run_id: str, count: int = 4) -> list[RunnerRecord] | None:
        """Create up to ``count`` synthetic runners in an existing run.

        Returns None when the run does not exist.
        """
        session = self._registry.get(run_id)
        if session is None:
            return None
        created: list[RunnerRecord] = []
        async with session.lock:
            if session.closed:
                return None
            for name in self.test_names[:max(count, 0)]:
                now = utc_now()
                runner = RunnerRecord(
                    id=f"test-runner-{uuid.uuid4().hex[:8]}",
                    name=name,
                    position=Position(
                        SEED_LATITUDE + self._rng.random() * SEED_SPAN_DEGREES,
                        SEED_LONGITUDE + self._rng.random() * SEED_SPAN_DEGREES,
                    ),
                    speed=SEED_MIN_SPEED + self._rng.random() * SEED_SPEED_SPAN,
                    joined_at=now,
                    last_update=now,
                    is_test=True,
                )
                session.runners[runner.id] = runner
                created.append(runner)
                self._hub.emit_to_session(run_id, "runner-joined", {
                    "runnerId": runner.id,
                    "runnerName": runner.name,
                    "totalRunners": len(session.runners),
                })
                self._hub.emit_to_session(run_id, "runner-updated", serialize_runner_update(runner))
        logger.info("Created %d test runners for run %s", len(created), run_id)
        return created
