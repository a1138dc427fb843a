"""PackRun Web server — FastAPI application factory."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mutagent.config import Config
from mutagent.runtime.log_store import LogStore, LogStoreHandler, SingleLineFormatter

import packrun
from packrun.runtime.config import load_packrun_config
from packrun.runtime.lifecycle import ConnectionLifecycleManager
from packrun.runtime.run_logging import RunContextFilter
from packrun.runtime.services import build_services

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def _setup_logging(config: Config, log_store: LogStore) -> list[logging.Handler]:
    """Attach the in-memory and file handlers to the ``packrun`` logger.

    Returns the handlers so shutdown can detach them again.
    """
    root_logger = logging.getLogger("packrun")
    root_logger.setLevel(logging.DEBUG)
    handlers: list[logging.Handler] = []

    # In-memory handler → LogStore (message only, timestamp in LogEntry)
    mem_handler = LogStoreHandler(log_store)
    # the store is unbounded; per-update debug lines only go to the file
    mem_handler.setLevel(str(config.get("logging.store_level", default="INFO")).upper())
    mem_handler.setFormatter(logging.Formatter("[run=%(run_id)s] %(message)s"))
    handlers.append(mem_handler)

    if config.get("logging.file", default=True):
        log_dir = Path(config.get("logging.dir", default="~/.packrun/logs")).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        session_ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        file_handler = logging.FileHandler(
            log_dir / f"server-{session_ts}.log", encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(SingleLineFormatter(
            "%(asctime)s %(levelname)-8s %(name)s [run=%(run_id)s] - %(message)s"
        ))
        handlers.append(file_handler)
        logger.info("Logging to %s", log_dir)

    run_filter = RunContextFilter()
    for handler in handlers:
        handler.addFilter(run_filter)
        root_logger.addHandler(handler)
    return handlers


def _teardown_logging(handlers: list[logging.Handler]) -> None:
    root_logger = logging.getLogger("packrun")
    for handler in handlers:
        root_logger.removeHandler(handler)
        handler.close()


# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------

async def _sweep_stale_runners(
    lifecycle: ConnectionLifecycleManager,
    max_age: float,
    interval: float,
) -> None:
    """Background task: evict runners with no update for ``max_age`` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            await lifecycle.evict_stale(max_age)
        except Exception:
            logger.exception("Stale runner sweep failed")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(config: Config | None = None) -> FastAPI:
    if config is None:
        config = load_packrun_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log_store = LogStore()
        handlers = _setup_logging(config, log_store)
        services = build_services(config)
        app.state.services = services
        app.state.log_store = log_store

        sweeper: asyncio.Task | None = None
        stale_timeout = float(config.get("runners.stale_timeout", default=0) or 0)
        if stale_timeout > 0:
            interval = float(config.get("runners.sweep_interval", default=5))
            sweeper = asyncio.create_task(
                _sweep_stale_runners(services.lifecycle, stale_timeout, interval)
            )
            logger.info("Stale runner eviction enabled (timeout=%ss)", stale_timeout)

        logger.info("Pack server ready (version %s)", packrun.__version__)

        yield

        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass

        active = len(services.registry)
        services.hub.close_all()
        services.registry.clear()
        logger.info("Shutdown complete (%d active run(s) dropped)", active)
        _teardown_logging(handlers)

    app = FastAPI(title="PackRun", version=packrun.__version__, lifespan=lifespan)
    app.state.config = config
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get("cors.origins", default=["*"]),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    from packrun.web.routes import router as api_router
    app.include_router(api_router)
    return app
