"""sessionpulse FastAPI application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from sessionpulse import config
from sessionpulse.dispatcher import SessionEventDispatcher, log_session_event
from sessionpulse.observability import initialize as initialize_observability, shutdown as shutdown_observability
from sessionpulse.registry import SessionRegistry
from sessionpulse.repo_info import RepoInfoResolver
from sessionpulse.routers.sessions import sessions_router
from sessionpulse.signals import SignalStore
from sessionpulse.watcher import SessionWatcher

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("sessionpulse")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("sessionpulse starting up")
    initialize_observability(app)

    # 1. Owned state and collaborators
    registry = SessionRegistry()
    watcher = SessionWatcher(
        registry,
        SignalStore(config.SIGNALS_DIR),
        RepoInfoResolver(),
        projects_dir=config.PROJECTS_DIR,
    )
    dispatcher = SessionEventDispatcher(watcher.events)
    dispatcher.subscribe(log_session_event)
    app.state.registry = registry
    app.state.watcher = watcher
    app.state.dispatcher = dispatcher

    # 2. Consume events before the initial scan starts producing them
    await dispatcher.start()

    # 3. Initial scan + watch
    await watcher.start()

    async def _halt_on_failure() -> None:
        failure = await watcher.wait_failed()
        logger.critical("Stopping session watcher after fatal error: %s", failure)
        await watcher.stop()

    app.state.failure_task = asyncio.create_task(_halt_on_failure())

    yield

    logger.info("sessionpulse shutting down")
    app.state.failure_task.cancel()
    try:
        await app.state.failure_task
    except asyncio.CancelledError:
        pass

    await watcher.stop()
    await dispatcher.drain()
    await dispatcher.stop()
    shutdown_observability(app)


app = FastAPI(
    title="sessionpulse",
    description="Live activity status for agent sessions, inferred from their logs",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sessions_router)


@app.get("/api/health")
def health(request: Request):
    """Health check endpoint."""
    watcher: SessionWatcher = request.app.state.watcher
    if watcher.failure is not None:
        watcher_state = "failed"
    elif watcher.is_running:
        watcher_state = "running"
    else:
        watcher_state = "stopped"
    return {
        "status": "ok" if watcher.failure is None else "degraded",
        "watcher": watcher_state,
        "sessions": len(request.app.state.registry),
    }
