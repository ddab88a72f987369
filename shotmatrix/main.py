from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from shotmatrix.routes import api
from shotmatrix.services.interfaces import DeviceRuntime
from shotmatrix.services.orchestrator import Orchestrator
from shotmatrix.services.registry import ProcessRegistry
from shotmatrix.services.run_manager import RunManager, install_run_manager
from shotmatrix.services.storage import RunRepository, get_repository

LOGGER = logging.getLogger("shotmatrix.main")

registry = ProcessRegistry()


def configure_runtime(runtime: DeviceRuntime, *, repo: Optional[RunRepository] = None) -> RunManager:
    """Attach device drivers and an automation provider so the API can execute runs."""
    manager = RunManager(repo or get_repository(), Orchestrator(runtime, registry))
    install_run_manager(manager)
    return manager


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    failures = registry.drain()
    if failures:
        LOGGER.warning("Resources still running at shutdown: %s", ", ".join(failures))


app = FastAPI(title="Shotmatrix Screenshot Runner", lifespan=lifespan)
app.include_router(api.router)


@app.get("/")
async def root() -> RedirectResponse:
    """Send visitors to the interactive API docs."""
    return RedirectResponse(url="/docs", status_code=303)
