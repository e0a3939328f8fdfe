"""Node handlers and the executor that runs a workflow step.

Each handler covers one node ``type``:
  trigger       -> the run's trigger output
  webhook       -> the webhook body that started the run
  static        -> a fixed value from the node config
  template      -> a rendered string
  http_request  -> an outbound HTTP call
  llm           -> a chat completion, optionally streamed token by token

Handlers receive a NodeContext and return a JSON value, or an async iterator
of JSON chunks when they stream.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from step_api.errors import NodeExecutionError, StepDispatchError, UnknownNodeTypeError
from step_api.schemas import Node, NodeGroup
from step_api.services import llm
from step_api.services.llm import ClientFactory
from step_api.services.streaming import is_stream

logger = logging.getLogger(__name__)

HTTP_NODE_TIMEOUT = float(os.environ.get("HTTP_NODE_TIMEOUT", "30"))


@dataclass
class NodeContext:
    """Everything a handler may read while executing one node."""

    node: Node
    trigger_output: Any
    webhook_body: Any
    client_factory: ClientFactory

    def get_config(self, key: str, default: Any = None) -> Any:
        return self.node.data.get(key, default)

    def render(self, template: str) -> str:
        """Render ``template`` with ``str.format_map``.

        Available names are ``trigger``, ``webhook`` and any keys in the
        node's ``variables`` config.
        """
        variables = {
            "trigger": self.trigger_output,
            "webhook": self.webhook_body,
            **(self.get_config("variables") or {}),
        }
        try:
            return template.format_map(variables)
        except (KeyError, IndexError, AttributeError, ValueError, TypeError) as exc:
            raise NodeExecutionError(
                f"Node '{self.node.id}' template could not be rendered: {exc!r}"
            ) from exc


class NodeHandler:
    """Base class for node handlers."""

    node_type: str = ""

    async def call(self, context: NodeContext) -> Any:
        raise NotImplementedError


class TriggerHandler(NodeHandler):
    node_type = "trigger"

    async def call(self, context: NodeContext) -> Any:
        return context.trigger_output


class WebhookHandler(NodeHandler):
    node_type = "webhook"

    async def call(self, context: NodeContext) -> Any:
        return context.webhook_body


class StaticHandler(NodeHandler):
    node_type = "static"

    async def call(self, context: NodeContext) -> Any:
        return context.get_config("value")


class TemplateHandler(NodeHandler):
    """Render ``data.template`` into ``{"text": ...}``."""

    node_type = "template"

    async def call(self, context: NodeContext) -> Any:
        template = context.get_config("template")
        if not isinstance(template, str):
            raise NodeExecutionError(f"Node '{context.node.id}' has no template")
        return {"text": context.render(template)}


class HttpRequestHandler(NodeHandler):
    """Perform an outbound HTTP request described by the node config.

    Reads ``url`` (required), ``method`` (default GET), ``headers``,
    ``params`` and ``json``. Non-2xx responses are returned, not raised;
    only transport failures fail the node.
    """

    node_type = "http_request"

    async def call(self, context: NodeContext) -> Any:
        url = context.get_config("url")
        if not url:
            raise NodeExecutionError(f"Node '{context.node.id}' is missing a url")

        method = str(context.get_config("method") or "GET").upper()
        try:
            async with context.client_factory() as client:
                resp = await client.request(
                    method,
                    context.render(url),
                    headers=context.get_config("headers"),
                    params=context.get_config("params"),
                    json=context.get_config("json"),
                    timeout=HTTP_NODE_TIMEOUT,
                )
        except httpx.HTTPError as exc:
            raise NodeExecutionError(f"{method} {url} failed: {exc}") from exc

        if "json" in resp.headers.get("content-type", ""):
            body: Any = resp.json()
        else:
            body = resp.text
        return {"status_code": resp.status_code, "body": body}


class LlmHandler(NodeHandler):
    """Ask a chat model to answer ``data.prompt``.

    With ``data.stream`` set, returns an async iterator of token chunks
    instead of a finished completion.
    """

    node_type = "llm"

    async def call(self, context: NodeContext) -> Any:
        prompt = context.get_config("prompt")
        if not isinstance(prompt, str):
            raise NodeExecutionError(f"Node '{context.node.id}' has no prompt")

        options = {
            "model": context.get_config("model"),
            "system": context.get_config("system"),
            "temperature": context.get_config("temperature"),
        }
        rendered = context.render(prompt)
        if context.get_config("stream"):
            return llm.stream_chat_completion(context.client_factory, rendered, **options)
        return await llm.create_chat_completion(context.client_factory, rendered, **options)


DEFAULT_HANDLERS: tuple[type[NodeHandler], ...] = (
    TriggerHandler,
    WebhookHandler,
    StaticHandler,
    TemplateHandler,
    HttpRequestHandler,
    LlmHandler,
)


class HandlerRegistry:
    """Maps node types to handler instances."""

    def __init__(self, handlers: tuple[type[NodeHandler], ...] = DEFAULT_HANDLERS) -> None:
        self._handlers: dict[str, NodeHandler] = {}
        for handler_cls in handlers:
            self.register(handler_cls)

    def register(self, handler_cls: type[NodeHandler]) -> None:
        if not handler_cls.node_type:
            raise ValueError(f"{handler_cls.__name__} does not declare a node_type")
        self._handlers[handler_cls.node_type] = handler_cls()

    def get(self, node_type: str) -> NodeHandler:
        handler = self._handlers.get(node_type)
        if handler is None:
            raise UnknownNodeTypeError(f"No handler registered for node type '{node_type}'")
        return handler

    @property
    def node_types(self) -> list[str]:
        return sorted(self._handlers)


class NodeExecutor:
    """Executes single nodes and node groups."""

    def __init__(
        self,
        registry: HandlerRegistry | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.registry = registry or HandlerRegistry()
        self.client_factory = client_factory or httpx.AsyncClient

    async def execute_single_node(
        self, node: Node, trigger_output: Any, webhook_body: Any
    ) -> Any:
        handler = self.registry.get(node.type)
        context = NodeContext(
            node=node,
            trigger_output=trigger_output,
            webhook_body=webhook_body,
            client_factory=self.client_factory,
        )
        logger.info("Executing node %s (type=%s)", node.id, node.type)
        try:
            return await handler.call(context)
        except StepDispatchError:
            raise
        except Exception as exc:
            logger.exception("Node %s failed", node.id)
            raise NodeExecutionError(f"Node '{node.id}' failed: {exc}") from exc

    async def execute_nodes_group(
        self, group: NodeGroup, trigger_output: Any, webhook_body: Any
    ) -> list[dict[str, Any]]:
        """Run every member of ``group`` concurrently.

        Streaming members are drained; their result is the joined token text.
        The first member failure cancels the members still running.

        Returns:
            ``{"node_id", "data"}`` entries in member order.
        """
        logger.info("Executing group %s with %d nodes", group.id, len(group.nodes))
        tasks = [
            asyncio.create_task(self._run_member(node, trigger_output, webhook_body))
            for node in group.nodes
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return [
            {"node_id": node.id, "data": result}
            for node, result in zip(group.nodes, results)
        ]

    async def _run_member(self, node: Node, trigger_output: Any, webhook_body: Any) -> Any:
        result = await self.execute_single_node(node, trigger_output, webhook_body)
        if not is_stream(result):
            return result

        tokens: list[str] = []
        chunks: list[Any] = []
        try:
            async for chunk in result:
                chunks.append(chunk)
                if isinstance(chunk, dict) and isinstance(chunk.get("token"), str):
                    tokens.append(chunk["token"])
        except StepDispatchError:
            raise
        except Exception as exc:
            logger.exception("Stream from node %s failed", node.id)
            raise NodeExecutionError(f"Node '{node.id}' stream failed: {exc}") from exc
        return "".join(tokens) if tokens else chunks


default_executor = NodeExecutor()


async def execute_single_node(node: Node, trigger_output: Any, webhook_body: Any) -> Any:
    return await default_executor.execute_single_node(node, trigger_output, webhook_body)


async def execute_nodes_group(
    group: NodeGroup, trigger_output: Any, webhook_body: Any
) -> list[dict[str, Any]]:
    return await default_executor.execute_nodes_group(group, trigger_output, webhook_body)


def get_executor() -> NodeExecutor:
    """FastAPI dependency returning the process-wide executor."""
    return default_executor
