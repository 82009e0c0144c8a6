"""Agent HQ FastAPI backend: application, lifespan wiring and runner."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent_hq import config
from agent_hq.events import EventBus
from agent_hq.observability import initialize as initialize_observability, shutdown as shutdown_observability
from agent_hq.repositories.sessions import SessionRepository
from agent_hq.routers.api import sessions_router, watch_router
from agent_hq.routers.events import events_router
from agent_hq.services.process_controller import ProcessController
from agent_hq.sync.tailer import SessionTailer

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("agent_hq")


async def run_startup_discovery(repository: SessionRepository, tailer: SessionTailer, watch: bool) -> None:
    """Initial full scan, then tail from the positions the scan reached."""
    await repository.discover()
    for path, (last_line, size) in repository.known_offsets().items():
        tailer.seed(path, last_line, size)
    if watch:
        await tailer.start()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Agent HQ backend starting up")
    initialize_observability(app)

    bus = EventBus()
    repository = SessionRepository(config.CLAUDE_HOME)
    tailer = SessionTailer(bus, config.CLAUDE_HOME)
    controller = ProcessController(bus)
    bus.subscribe(repository.handle_event)

    app.state.event_bus = bus
    app.state.repository = repository
    app.state.tailer = tailer
    app.state.controller = controller

    # A discovery scan runs to completion once started; shutdown waits for it.
    app.state.startup_task = asyncio.create_task(
        run_startup_discovery(repository, tailer, config.WATCH_ON_STARTUP)
    )

    yield

    logger.info("Agent HQ backend shutting down")
    try:
        await app.state.startup_task
    except Exception as e:
        logger.error(f"Startup discovery failed: {e}")

    await tailer.stop()
    await controller.shutdown()
    shutdown_observability(app)


app = FastAPI(
    title="Agent HQ API",
    description="Live view and control of concurrent agent sessions",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)
app.include_router(watch_router)
app.include_router(events_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    tailer = getattr(app.state, "tailer", None)
    controller = getattr(app.state, "controller", None)
    return {
        "status": "ok",
        "watcher": "running" if tailer is not None and tailer.is_running else "stopped",
        "controlledSessions": controller.controlled_session_ids if controller is not None else [],
    }


def run() -> None:
    import uvicorn

    uvicorn.run("agent_hq.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
