"""PackRun — live group-run session and gap-tracking server."""

__version__ = "0.1.0"

from packrun.run import Gap, GapReport, Position, RunnerRecord, Session
