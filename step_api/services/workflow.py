"""Workflow run state.

A run is identified by its trigger output: the SHA-256 of its canonical JSON
form is the ``run_key`` every node state row is filed under. Rows are read
back in insertion order, which is the order the steps executed in.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from step_api.models import WorkflowNodeState
from step_api.services import executions

logger = logging.getLogger(__name__)


def run_key(trigger_output: Any) -> str:
    """Return the state key for a run, independent of JSON key order."""
    canonical = json.dumps(
        trigger_output, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


async def get_workflow_state(session: AsyncSession, trigger_output: Any) -> list[Any]:
    """Load the stored node outputs of a run in execution order."""
    result = await session.execute(
        select(WorkflowNodeState.data)
        .where(WorkflowNodeState.run_key == run_key(trigger_output))
        .order_by(WorkflowNodeState.id)
    )
    states: list[Any] = []
    for value in result.scalars():
        states.append(value.get("data") if isinstance(value, dict) else value)
    return states


async def set_workflow_node_state(
    session: AsyncSession, trigger_output: Any, node_id: str, value: Any
) -> None:
    """Upsert the output of ``node_id`` for a run.

    Re-running a node replaces its value but keeps its original position.
    """
    stmt = insert(WorkflowNodeState).values(
        run_key=run_key(trigger_output),
        node_id=node_id,
        data=value,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[WorkflowNodeState.run_key, WorkflowNodeState.node_id],
        set_={"data": stmt.excluded.data, "updated_at": func.now()},
    )
    await session.execute(stmt)
    logger.debug("Stored state for node %s", node_id)


class WorkflowStateStore:
    """Session-managing facade over the workflow state functions.

    Every call opens its own session so calls can run as detached
    background work after the response has been sent.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_workflow_state(self, trigger_output: Any) -> list[Any]:
        async with self._session_factory() as session:
            return await get_workflow_state(session, trigger_output)

    async def set_workflow_node_state(
        self, trigger_output: Any, node_id: str, value: Any
    ) -> None:
        async with self._session_factory() as session:
            await set_workflow_node_state(session, trigger_output, node_id, value)
            await session.commit()

    async def store_execution_data_v2(
        self, results: list[Any], workflow_id: str, user_id: str
    ) -> None:
        async with self._session_factory() as session:
            await executions.store_execution_data_v2(session, results, workflow_id, user_id)
            await session.commit()


def get_state_store() -> WorkflowStateStore:
    """FastAPI dependency returning the database-backed state store."""
    from step_api.database import async_session_factory

    return WorkflowStateStore(async_session_factory)
