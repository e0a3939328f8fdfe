"""Server-sent-events helpers for streamed step results."""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from typing import Any

STREAM_MODEL_LABEL = "stream-reconstructed"


def is_stream(result: Any) -> bool:
    """Return True when an execution result is a lazy sequence of chunks."""
    return isinstance(result, AsyncIterator)


def sse_data(payload: Any) -> str:
    """Format a JSON payload as an unnamed SSE frame."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def sse_event(event: str, data: str) -> str:
    """Format a named SSE frame with a raw string payload."""
    return f"event: {event}\ndata: {data}\n\n"


def build_stream_completion(tokens: list[str]) -> dict[str, Any]:
    """Fold streamed tokens into a single chat-completion shaped object."""
    now_ms = int(time.time() * 1000)
    return {
        "id": f"cmpl-{now_ms:x}",
        "object": "chat.completion",
        "created": now_ms // 1000,
        "model": STREAM_MODEL_LABEL,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": "".join(tokens)},
                "finish_reason": "stop",
            }
        ],
    }
