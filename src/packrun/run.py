"""Run data model — sessions, runner records and gap values."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Position:
    latitude: float
    longitude: float


@dataclass
class RunnerRecord:
    id: str
    name: str
    position: Position | None = None
    speed: float = 0.0  # m/s
    joined_at: str = ""
    last_update: str = ""
    is_test: bool = False


@dataclass
class Session:
    """One live run.

    ``runners`` is keyed by connection id (live runners) or synthetic id
    (test runners).  All structural changes go through ``lock``; once the
    registry drops the session it is marked ``closed`` and must not be
    mutated again.
    """

    id: str
    created_at: str = ""
    runners: dict[str, RunnerRecord] = field(default_factory=dict)
    closed: bool = False
    # Runtime (not serialized)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def live_runner_count(self) -> int:
        return sum(1 for r in self.runners.values() if not r.is_test)


@dataclass
class Gap:
    runner_a: str
    runner_b: str
    runner_a_id: str
    runner_b_id: str
    distance_meters: int
    speed_difference_mps: float


@dataclass
class GapReport:
    gaps: list[Gap] = field(default_factory=list)
    largest_gap: Gap | None = None
    timestamp: str = ""
