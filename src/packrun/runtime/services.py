"""Per-application service graph, built in the server lifespan."""

from __future__ import annotations

from dataclasses import dataclass

from mutagent.config import Config

from packrun.runtime.gaps import GapCalculator
from packrun.runtime.ingest import PositionIngester
from packrun.runtime.lifecycle import ConnectionLifecycleManager
from packrun.runtime.registry import SessionRegistry
from packrun.web.connection import BroadcastHub


@dataclass
class RunServices:
    registry: SessionRegistry
    hub: BroadcastHub
    lifecycle: ConnectionLifecycleManager
    ingester: PositionIngester
    gaps: GapCalculator


def build_services(config: Config) -> RunServices:
    registry = SessionRegistry()
    hub = BroadcastHub()
    return RunServices(
        registry=registry,
        hub=hub,
        lifecycle=ConnectionLifecycleManager(
            registry, hub,
            purge_test_runners=config.get("runners.purge_test_runners", default=True),
        ),
        ingester=PositionIngester(
            registry, hub,
            test_names=config.get("runners.test_names"),
        ),
        gaps=GapCalculator(),
    )
