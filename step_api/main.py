"""FastAPI application dispatching workflow steps one request at a time.

Each step of a workflow graph is executed by its own request to
``/api/step-v{N}/{step}``; the response redirects the caller to the next
step until the graph is exhausted.

The shutdown sequence:
1. Drain the background persistence queue
2. Dispose the database engine
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator, Awaitable, Callable

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

load_dotenv()

from step_api.errors import StepDispatchError
from step_api.routes import steps
from step_api.services.background import task_queue
from step_api.services.executors import default_executor

logger = logging.getLogger(__name__)

PERSISTENCE_DRAIN_TIMEOUT = float(os.environ.get("PERSISTENCE_DRAIN_TIMEOUT", "10"))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: flush pending state writes on shutdown."""
    logger.info(
        "Step API started with node types: %s",
        ", ".join(default_executor.registry.node_types),
    )

    yield

    logger.info("Flushing background persistence...")
    await task_queue.drain(timeout=PERSISTENCE_DRAIN_TIMEOUT)

    from step_api.database import engine

    await engine.dispose()
    logger.info("Step API stopped")


app = FastAPI(
    title="Workflow Step API",
    description=(
        "Executes one step of a workflow graph per request, streams partial "
        "results as server-sent events, and redirects to the next step."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def add_cors_headers(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Attach the permissive CORS headers to every response, errors included."""
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        response = JSONResponse(status_code=500, content={"detail": "Internal server error"})
    for name, value in steps.CORS_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


@app.exception_handler(StepDispatchError)
async def step_dispatch_error_handler(request: Request, exc: StepDispatchError) -> JSONResponse:
    logger.warning(
        "%s on %s: %s", type(exc).__name__, request.url.path, exc.message
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.include_router(steps.router, prefix="/api", tags=["Workflow Steps"])


@app.get("/health")
async def health_check() -> dict:
    """Application health check endpoint."""
    return {
        "status": "healthy",
        "pending_background_tasks": task_queue.pending,
    }
