"""Serialize run dataclasses to JSON-safe dicts for WebSocket transport."""

from __future__ import annotations

from typing import Any

from packrun.run import Gap, GapReport, Position, RunnerRecord, Session


def serialize_position(pos: Position | None) -> dict[str, float] | None:
    if pos is None:
        return None
    return {"latitude": pos.latitude, "longitude": pos.longitude}


def serialize_runner(r: RunnerRecord) -> dict[str, Any]:
    return {
        "id": r.id,
        "name": r.name,
        "position": serialize_position(r.position),
        "speed": r.speed,
        "joinedAt": r.joined_at,
        "lastUpdate": r.last_update,
        "isTest": r.is_test,
    }


def serialize_runner_update(r: RunnerRecord) -> dict[str, Any]:
    """Payload of a ``runner-updated`` event."""
    return {
        "runnerId": r.id,
        "runnerName": r.name,
        "position": serialize_position(r.position),
        "speed": r.speed,
        "timestamp": r.last_update,
    }


def serialize_gap(gap: Gap | None) -> dict[str, Any] | None:
    if gap is None:
        return None
    return {
        "runnerA": gap.runner_a,
        "runnerB": gap.runner_b,
        "runnerAId": gap.runner_a_id,
        "runnerBId": gap.runner_b_id,
        "distanceMeters": gap.distance_meters,
        "speedDifferenceMps": gap.speed_difference_mps,
    }


def serialize_gap_report(report: GapReport) -> dict[str, Any]:
    return {
        "gaps": [serialize_gap(g) for g in report.gaps],
        "largestGap": serialize_gap(report.largest_gap),
        "timestamp": report.timestamp,
    }


def serialize_run_summary(session: Session) -> dict[str, Any]:
    """Entry of the ``GET /runs`` listing."""
    return {
        "runId": session.id,
        "runnerCount": len(session.runners),
        "startedAt": session.created_at,
        "runners": [
            {"id": r.id, "name": r.name, "isTest": r.is_test}
            for r in session.runners.values()
        ],
    }
