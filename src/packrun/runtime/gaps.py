"""Gap calculation — pairwise great-circle distances between runners.

Pairs are enumerated over the positioned runners sorted by runner id, so the
reported gap order and the largest-gap tie-break depend only on which
runners are present, never on the order they joined in.  Among pairs with
the same maximum distance the first one in that order wins.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import replace

from packrun.run import Gap, GapReport, RunnerRecord, Session, utc_now

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two lat/lon points (degrees)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def round_meters(distance: float) -> int:
    """Whole meters, halves rounded up."""
    return int(math.floor(distance + 0.5))


def compute_gaps(runners: Iterable[RunnerRecord]) -> GapReport:
    positioned = sorted(
        (r for r in runners if r.position is not None),
        key=lambda r: r.id,
    )
    report = GapReport(timestamp=utc_now())
    if len(positioned) < 2:
        return report

    best_distance = -1.0
    for i, a in enumerate(positioned):
        for b in positioned[i + 1:]:
            distance = haversine_distance(
                a.position.latitude, a.position.longitude,
                b.position.latitude, b.position.longitude,
            )
            gap = Gap(
                runner_a=a.name,
                runner_b=b.name,
                runner_a_id=a.id,
                runner_b_id=b.id,
                distance_meters=round_meters(distance),
                speed_difference_mps=round(abs(a.speed - b.speed), 1),
            )
            report.gaps.append(gap)
            # strict > keeps the earliest pair on ties
            if distance > best_distance:
                best_distance = distance
                report.largest_gap = gap
    return report


class GapCalculator:
    """Computes gaps over a consistent snapshot of a session."""

    async def compute(self, session: Session) -> GapReport:
        async with session.lock:
            # positions are replaced, never mutated, so a shallow copy is enough
            snapshot = [replace(r) for r in session.runners.values()]
        report = compute_gaps(snapshot)
        if report.largest_gap is not None:
            logger.info(
                "Calculated %d gap(s) for run %s, largest: %dm",
                len(report.gaps), session.id, report.largest_gap.distance_meters,
            )
        return report
