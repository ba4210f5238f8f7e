import sys
from typing import Any

import fastapi
import uvicorn

from fastapi import FastAPI, Query
from fastapi.responses import PlainTextResponse

from testgen.queue import configure_event_handler, pending_events, shutdown_queue, start_worker
from testgen.services.generation import GenerationProcessor
from testgen.telemetry import telemetry_buffer
from testgen.webhook import router as webhook_router


app = FastAPI(title="PR Unit Test Generator")

app.include_router(webhook_router, tags=["webhook"])


@app.get("/", response_class=PlainTextResponse)
def root() -> str:
    return "pong"


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "The unit test generator is operational and waiting for pull requests.",
        "pending_events": pending_events(),
        "environment": {
            "python version": sys.version,
            "fastapi version": fastapi.__version__,
            "uvicorn version": uvicorn.__version__,
        },
    }


@app.get("/logs")
def logs(limit: int = Query(100, ge=1, le=500)) -> dict[str, Any]:
    entries = telemetry_buffer.recent(limit)
    return {"count": len(entries), "entries": [entry.to_dict() for entry in entries]}


@app.on_event("startup")
async def _configure_queue_worker() -> None:
    configure_event_handler(GenerationProcessor())
    start_worker()


@app.on_event("shutdown")
async def _shutdown_queue_worker() -> None:
    await shutdown_queue()
