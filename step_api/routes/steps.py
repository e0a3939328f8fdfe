"""Workflow step dispatch routes.

OPTIONS /api/step-v{N}/{step} - CORS preflight
POST    /api/step-v{N}/{step} - Execute one step and redirect to the next

Each POST executes the node (or node group) at position ``step`` of the
workflow graph, appends its output to the run's accumulated results and
answers with one of:

  307 + Location     more steps remain, result is a plain value
  200 + {"data": []} this was the last step
  200 SSE stream     the step streams; a final ``redirect`` event names the
                     next step when there is one

State writes are handed to the background task queue and are not awaited.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse, StreamingResponse

from step_api.errors import StepOutOfRangeError
from step_api.schemas import GraphEntry, StepRequest
from step_api.services.background import BackgroundTaskQueue, get_task_queue
from step_api.services.executors import NodeExecutor, get_executor
from step_api.services.graph import construct_nodes_graph
from step_api.services.streaming import (
    build_stream_completion,
    is_stream,
    sse_data,
    sse_event,
)
from step_api.services.workflow import WorkflowStateStore, get_state_store

logger = logging.getLogger(__name__)
router = APIRouter()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}

_STEP_INDEX = re.compile(r"^\+?[0-9]+$")


def parse_step_index(segment: str) -> int:
    """Parse the trailing path segment as an unsigned step index.

    Anything that is not an unsigned integer, or that does not fit in a
    machine word, falls back to step 0.
    """
    if _STEP_INDEX.match(segment):
        value = int(segment)
        if value <= sys.maxsize:
            return value
    logger.warning("Unparseable step segment %r, defaulting to step 0", segment)
    return 0


def step_path(version: str, step_index: int) -> str:
    return f"/api/step-v{version}/{step_index}"


def _schedule_node_state(
    queue: BackgroundTaskQueue,
    store: WorkflowStateStore,
    trigger_output: Any,
    entry: GraphEntry,
    result: Any,
) -> None:
    if entry.id is None:
        return
    queue.schedule(
        store.set_workflow_node_state(trigger_output, entry.id, {"data": result}),
        name=f"node-state:{entry.id}",
    )


def _schedule_execution_record(
    queue: BackgroundTaskQueue,
    store: WorkflowStateStore,
    results: list[Any],
    request: StepRequest,
) -> None:
    queue.schedule(
        store.store_execution_data_v2(list(results), request.workflow_id, request.user_id),
        name=f"execution:{request.workflow_id or '-'}",
    )


async def _load_results(store: WorkflowStateStore, trigger_output: Any) -> list[Any]:
    try:
        return list(await store.get_workflow_state(trigger_output))
    except Exception:
        logger.exception("Failed to load workflow state, starting with no prior results")
        return []


async def _stream_step(
    stream: AsyncIterator[Any],
    *,
    entry: GraphEntry,
    results: list[Any],
    next_path: str | None,
    request: StepRequest,
    store: WorkflowStateStore,
    queue: BackgroundTaskQueue,
) -> AsyncIterator[str]:
    tokens: list[str] = []
    try:
        async for chunk in stream:
            yield sse_data(chunk)
            if isinstance(chunk, dict) and isinstance(chunk.get("token"), str):
                tokens.append(chunk["token"])
    except Exception as exc:
        # Headers are already sent, so the failure can only be reported in-band.
        logger.exception("Stream for node %s failed", entry.id)
        yield sse_event("error", json.dumps({"message": str(exc), "type": type(exc).__name__}))
        return
    finally:
        # Runs on client disconnect too; releases the upstream connection.
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    if tokens:
        completion = build_stream_completion(tokens)
        results.append(completion)
        _schedule_node_state(queue, store, request.trigger_output, entry, completion)

    if next_path is not None:
        yield sse_event("redirect", next_path)
    else:
        _schedule_execution_record(queue, store, results, request)


@router.options("/step-v{version}/{step}", status_code=204)
async def step_preflight(version: str, step: str) -> Response:
    """Answer CORS preflight without touching the workflow."""
    return Response(status_code=204, headers=CORS_HEADERS)


@router.post("/step-v{version}/{step}")
async def dispatch_step(
    version: str,
    step: str,
    request: StepRequest,
    store: WorkflowStateStore = Depends(get_state_store),
    executor: NodeExecutor = Depends(get_executor),
    queue: BackgroundTaskQueue = Depends(get_task_queue),
) -> Response:
    """Execute the workflow step at index ``step``.

    Prior results are loaded from the run's state (keyed by
    ``trigger_output``); a failed load is treated as an empty run.
    """
    step_index = parse_step_index(step)
    results = await _load_results(store, request.trigger_output)

    graph = construct_nodes_graph(request.nodes, request.edges)
    if step_index >= len(graph):
        raise StepOutOfRangeError(step_index, len(graph))
    entry = graph[step_index]

    logger.info(
        "Dispatching step %d/%d of workflow %r (node=%s, group=%s)",
        step_index,
        len(graph),
        request.workflow_id,
        entry.id,
        entry.is_group,
    )

    if entry.is_group:
        result = await executor.execute_nodes_group(
            entry, request.trigger_output, request.webhook_body
        )
    else:
        result = await executor.execute_single_node(
            entry, request.trigger_output, request.webhook_body
        )

    has_next = step_index + 1 < len(graph)
    next_path = step_path(version, step_index + 1) if has_next else None

    if is_stream(result):
        return StreamingResponse(
            _stream_step(
                result,
                entry=entry,
                results=results,
                next_path=next_path,
                request=request,
                store=store,
                queue=queue,
            ),
            headers=SSE_HEADERS,
        )

    results.append(result)
    _schedule_node_state(queue, store, request.trigger_output, entry, result)

    if next_path is not None:
        return JSONResponse(
            content={"data": results},
            status_code=307,
            headers={"Location": next_path},
        )

    _schedule_execution_record(queue, store, results, request)
    return JSONResponse(content={"data": results})
