"""In-memory collaborators and SSE parsing for step API tests.

Usage:
    from tests.helpers import InMemoryStateStore, ScriptedExecutor, parse_sse

    store = InMemoryStateStore()
    executor = ScriptedExecutor({"a": {"x": 1}})
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

from step_api.schemas import Node, NodeGroup
from step_api.services.workflow import run_key


class InMemoryStateStore:
    """Dict-backed stand-in for WorkflowStateStore."""

    def __init__(self, *, fail_on_load: bool = False) -> None:
        self.fail_on_load = fail_on_load
        self.node_states: dict[tuple[str, str], Any] = {}
        self.executions: dict[tuple[str, str], list[Any]] = {}
        self.load_calls = 0

    def seed(self, trigger_output: Any, node_id: str, result: Any) -> None:
        self.node_states[(run_key(trigger_output), node_id)] = {"data": result}

    def node_state(self, trigger_output: Any, node_id: str) -> Any:
        return self.node_states.get((run_key(trigger_output), node_id))

    async def get_workflow_state(self, trigger_output: Any) -> list[Any]:
        self.load_calls += 1
        if self.fail_on_load:
            raise ConnectionError("state backend unavailable")
        key = run_key(trigger_output)
        return [value["data"] for (k, _), value in self.node_states.items() if k == key]

    async def set_workflow_node_state(
        self, trigger_output: Any, node_id: str, value: Any
    ) -> None:
        self.node_states[(run_key(trigger_output), node_id)] = value

    async def store_execution_data_v2(
        self, results: list[Any], workflow_id: str, user_id: str
    ) -> None:
        self.executions[(workflow_id, user_id)] = results


class BlockingStateStore(InMemoryStateStore):
    """In-memory store whose writes wait until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def set_workflow_node_state(
        self, trigger_output: Any, node_id: str, value: Any
    ) -> None:
        await self.release.wait()
        await super().set_workflow_node_state(trigger_output, node_id, value)

    async def store_execution_data_v2(
        self, results: list[Any], workflow_id: str, user_id: str
    ) -> None:
        await self.release.wait()
        await super().store_execution_data_v2(results, workflow_id, user_id)


class ScriptedExecutor:
    """Executor returning canned outputs by node id and recording every call.

    An output may be a callable, which is invoked per call; use it for
    streams (a fresh async generator each time) or to raise.
    """

    def __init__(self, outputs: dict[str, Any]) -> None:
        self.outputs = outputs
        self.calls: list[tuple[str, str | None]] = []

    def _output(self, node_id: str | None) -> Any:
        output = self.outputs.get(node_id)
        return output() if callable(output) else output

    async def execute_single_node(
        self, node: Node, trigger_output: Any, webhook_body: Any
    ) -> Any:
        self.calls.append(("single", node.id))
        return self._output(node.id)

    async def execute_nodes_group(
        self, group: NodeGroup, trigger_output: Any, webhook_body: Any
    ) -> Any:
        self.calls.append(("group", group.id))
        return self._output(group.id)


def token_stream(*tokens: str) -> Callable[[], AsyncIterator[dict[str, Any]]]:
    """Return a factory producing a stream of ``{"token": ...}`` chunks."""

    async def gen() -> AsyncIterator[dict[str, Any]]:
        for token in tokens:
            yield {"token": token}

    return gen


def failing_stream(*tokens: str) -> Callable[[], AsyncIterator[dict[str, Any]]]:
    """Return a factory producing a stream that raises after ``tokens``."""

    async def gen() -> AsyncIterator[dict[str, Any]]:
        for token in tokens:
            yield {"token": token}
        raise RuntimeError("upstream closed the stream")

    return gen


def parse_sse(body: str) -> list[dict[str, str]]:
    """Split an SSE body into frames of ``{"event": ..., "data": ...}``.

    Frames without an ``event:`` line get the default event name ``message``.
    """
    frames: list[dict[str, str]] = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        frame = {"event": "message", "data": ""}
        for line in block.split("\n"):
            field, _, value = line.partition(": ")
            if field in frame:
                frame[field] = value
        frames.append(frame)
    return frames


def static_node(node_id: str | None, value: Any = None) -> dict[str, Any]:
    node: dict[str, Any] = {"type": "static", "data": {"value": value}}
    if node_id is not None:
        node["id"] = node_id
    return node
