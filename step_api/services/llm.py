"""Chat-model access for ``llm`` workflow nodes.

Builds a ``ChatOpenAI`` against any OpenAI-compatible endpoint. Streaming
output is re-emitted as ``{"token": ...}`` chunks, which is the shape the
step dispatcher buffers into a completion.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import openai
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from step_api.errors import NodeExecutionError

logger = logging.getLogger(__name__)

LLM_API_BASE = os.environ.get("LLM_API_BASE", "https://api.openai.com/v1")
LLM_API_KEY = os.environ.get("LLM_API_KEY") or os.environ.get("OPENAI_API_KEY")
LLM_MODEL = os.environ.get("LLM_MODEL", "gpt-4o-mini")
LLM_TIMEOUT = float(os.environ.get("LLM_TIMEOUT", "60"))
LLM_MAX_RETRIES = int(os.environ.get("LLM_MAX_RETRIES", "2"))

ClientFactory = Callable[[], httpx.AsyncClient]


def get_chat_model(
    http_client: httpx.AsyncClient,
    *,
    model: str | None = None,
    temperature: float | None = None,
) -> ChatOpenAI:
    """Standardize chat model configuration for all ``llm`` nodes."""
    kwargs: dict[str, Any] = {
        "model": model or LLM_MODEL,
        "base_url": LLM_API_BASE,
        "api_key": LLM_API_KEY,
        "timeout": LLM_TIMEOUT,
        "max_retries": LLM_MAX_RETRIES,
        "http_async_client": http_client,
    }
    if temperature is not None:
        kwargs["temperature"] = temperature
    return ChatOpenAI(**kwargs)


def build_messages(prompt: str, system: str | None = None) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    if system:
        messages.append(SystemMessage(content=system))
    messages.append(HumanMessage(content=prompt))
    return messages


def completion_to_dict(message: AIMessage, model: str) -> dict[str, Any]:
    """Render a model reply as a chat-completion shaped JSON object."""
    metadata = message.response_metadata or {}
    content = message.content if isinstance(message.content, str) else ""
    return {
        "id": message.id,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": metadata.get("model_name", model),
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": metadata.get("finish_reason"),
            }
        ],
        "usage": message.usage_metadata,
    }


async def create_chat_completion(
    client_factory: ClientFactory,
    prompt: str,
    *,
    model: str | None = None,
    system: str | None = None,
    temperature: float | None = None,
) -> dict[str, Any]:
    """Ask the model for a complete answer."""
    try:
        async with client_factory() as client:
            chat = get_chat_model(client, model=model, temperature=temperature)
            message = await chat.ainvoke(build_messages(prompt, system))
    except openai.OpenAIError as exc:
        raise NodeExecutionError(f"Chat completion request failed: {exc}") from exc
    return completion_to_dict(message, model or LLM_MODEL)


async def stream_chat_completion(
    client_factory: ClientFactory,
    prompt: str,
    *,
    model: str | None = None,
    system: str | None = None,
    temperature: float | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Stream an answer, yielding one ``{"token": ...}`` chunk per delta.

    The HTTP connection stays open for as long as the caller iterates.

    Raises:
        NodeExecutionError: If the model call fails.
    """
    try:
        async with client_factory() as client:
            chat = get_chat_model(client, model=model, temperature=temperature)
            async for chunk in chat.astream(build_messages(prompt, system)):
                if isinstance(chunk.content, str) and chunk.content:
                    yield {"token": chunk.content}
    except openai.OpenAIError as exc:
        logger.warning("Chat completion stream failed: %s", exc)
        raise NodeExecutionError(f"Chat completion stream failed: {exc}") from exc
