"""Inbound WebSocket events — one tagged variant per event name.

Frame format::

    {"event": "update-position", "data": {"latitude": 37.77, "longitude": -122.41, "speed": 3.2}}

``parse_event`` either returns one of the variants below or raises
``MalformedEvent``; handlers never see raw dicts.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Union

from packrun.run import Position


class MalformedEvent(ValueError):
    """Frame is not a known event or its payload fails validation."""

    def __init__(self, message: str, event: str = "") -> None:
        super().__init__(message)
        self.event = event


@dataclass(frozen=True)
class JoinRun:
    run_id: str
    runner_name: str


@dataclass(frozen=True)
class UpdatePosition:
    latitude: float
    longitude: float
    speed: float | None = None


@dataclass(frozen=True)
class TestRunnerUpdate:
    __test__ = False  # keep pytest from collecting this as a test class

    runner_id: str
    runner_name: str
    position: Position
    speed: float | None = None


@dataclass(frozen=True)
class RequestGaps:
    pass


@dataclass(frozen=True)
class CreateTestRunners:
    run_id: str
    count: int = 4


@dataclass(frozen=True)
class LeaveRun:
    run_id: str


InboundEvent = Union[JoinRun, UpdatePosition, TestRunnerUpdate, RequestGaps, CreateTestRunners, LeaveRun]


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------

def _string(data: dict, key: str, event: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MalformedEvent(f"{key} must be a non-empty string", event)
    return value.strip()


def _number(data: dict, key: str, event: str, *, low: float | None = None,
            high: float | None = None, required: bool = True) -> float | None:
    value = data.get(key)
    if value is None and not required:
        return None
    # bool is an int subclass; a JSON true is not a coordinate
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedEvent(f"{key} must be a finite number", event)
    try:
        number = float(value)
    except OverflowError:
        raise MalformedEvent(f"{key} is too large", event) from None
    if not math.isfinite(number):
        raise MalformedEvent(f"{key} must be a finite number", event)
    if (low is not None and number < low) or (high is not None and number > high):
        raise MalformedEvent(f"{key} out of range: {number}", event)
    return number


def _position(data: dict, event: str) -> Position:
    return Position(
        latitude=_number(data, "latitude", event, low=-90, high=90),
        longitude=_number(data, "longitude", event, low=-180, high=180),
    )


# ---------------------------------------------------------------------------
# Per-event parsers
# ---------------------------------------------------------------------------

def _parse_join_run(data: dict) -> JoinRun:
    return JoinRun(
        run_id=_string(data, "runId", "join-run"),
        runner_name=_string(data, "runnerName", "join-run"),
    )


def _parse_update_position(data: dict) -> UpdatePosition:
    pos = _position(data, "update-position")
    return UpdatePosition(
        latitude=pos.latitude,
        longitude=pos.longitude,
        speed=_number(data, "speed", "update-position", low=0, required=False),
    )


def _parse_test_runner_update(data: dict) -> TestRunnerUpdate:
    position = data.get("position")
    if not isinstance(position, dict):
        raise MalformedEvent("position must be an object", "test-runner-update")
    return TestRunnerUpdate(
        runner_id=_string(data, "runnerId", "test-runner-update"),
        runner_name=_string(data, "runnerName", "test-runner-update"),
        position=_position(position, "test-runner-update"),
        speed=_number(data, "speed", "test-runner-update", low=0, required=False),
    )


def _parse_request_gaps(data: dict) -> RequestGaps:
    return RequestGaps()


def _parse_create_test_runners(data: dict) -> CreateTestRunners:
    count = data.get("count", 4)
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        raise MalformedEvent("count must be a non-negative integer", "create-test-runners")
    return CreateTestRunners(run_id=_string(data, "runId", "create-test-runners"), count=count)


def _parse_leave_run(data: dict) -> LeaveRun:
    return LeaveRun(run_id=_string(data, "runId", "leave-run"))


_PARSERS = {
    "join-run": _parse_join_run,
    "update-position": _parse_update_position,
    "test-runner-update": _parse_test_runner_update,
    "request-gaps": _parse_request_gaps,
    "create-test-runners": _parse_create_test_runners,
    "leave-run": _parse_leave_run,
}

EVENT_NAMES: dict[type, str] = {
    JoinRun: "join-run",
    UpdatePosition: "update-position",
    TestRunnerUpdate: "test-runner-update",
    RequestGaps: "request-gaps",
    CreateTestRunners: "create-test-runners",
    LeaveRun: "leave-run",
}


def parse_event(message: Any) -> InboundEvent:
    """Turn one decoded JSON frame into an inbound event variant."""
    if not isinstance(message, dict):
        raise MalformedEvent("frame must be a JSON object")
    if message.get("type", "event") != "event":
        raise MalformedEvent(f"unsupported frame type: {message.get('type')!r}")

    name = message.get("event")
    if not isinstance(name, str) or not name:
        raise MalformedEvent("missing event name")
    parser = _PARSERS.get(name)
    if parser is None:
        raise MalformedEvent(f"unknown event: {name}", name)

    data = message.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedEvent("data must be a JSON object", name)
    return parser(data)
