"""FastAPI entry-point exposing orchestrator controls."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from fleet.api.routes import router as agents_router
from fleet.api.routes import tasks_router
from fleet.api.workflows import executions_router, templates_router
from fleet.api.workflows import router as workflows_router
from fleet.runtime import get_engine, get_registry, start_runtime, stop_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the workflow coordinator on startup; unregister every agent on shutdown."""
    await start_runtime()
    yield
    await stop_runtime()


app = FastAPI(title="Fleet Orchestrator", lifespan=lifespan)
app.include_router(agents_router)
app.include_router(tasks_router)
app.include_router(workflows_router)
app.include_router(executions_router)
app.include_router(templates_router)


@app.get("/health")
async def health() -> Dict[str, Any]:
    system = await get_registry().get_system_health()
    return {"status": system.overall.value, "agents": system.summary}


@app.get("/metrics")
async def metrics() -> Dict[str, Any]:
    system = await get_registry().get_system_metrics()
    return {
        "tasks_processed": system.total_tasks_processed,
        "tasks_successful": system.total_tasks_successful,
        "tasks_failed": system.total_tasks_failed,
        "average_error_rate": system.average_error_rate,
        "throughput": system.total_throughput,
        "workflows": get_engine().metrics(),
    }
