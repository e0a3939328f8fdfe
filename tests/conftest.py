"""Pytest fixtures for the step API tests.

Provides:
- state_store: In-memory workflow state store
- executor: Scripted node executor recording its calls
- task_queue: Fresh background task queue per test
- client: Async HTTP client bound to the app with the above injected
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from step_api.services.background import BackgroundTaskQueue, get_task_queue
from step_api.services.executors import get_executor
from step_api.services.workflow import get_state_store
from tests.helpers import InMemoryStateStore, ScriptedExecutor


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def executor() -> ScriptedExecutor:
    """Executor with no outputs; tests fill ``executor.outputs`` as needed."""
    return ScriptedExecutor({})


@pytest.fixture
def task_queue() -> BackgroundTaskQueue:
    return BackgroundTaskQueue()


@pytest_asyncio.fixture
async def client(
    state_store: InMemoryStateStore,
    executor: ScriptedExecutor,
    task_queue: BackgroundTaskQueue,
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client bound to the FastAPI app.

    Dependencies are overridden so no database or outbound HTTP is touched.
    Pending background work is drained before the overrides are removed.
    """
    from step_api.main import app

    app.dependency_overrides[get_state_store] = lambda: state_store
    app.dependency_overrides[get_executor] = lambda: executor
    app.dependency_overrides[get_task_queue] = lambda: task_queue

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await task_queue.drain(timeout=5)
    app.dependency_overrides.clear()
