"""Persistence of final workflow results."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from step_api.models import WorkflowExecution

logger = logging.getLogger(__name__)


async def store_execution_data_v2(
    session: AsyncSession,
    results: list[Any],
    workflow_id: str,
    user_id: str,
) -> None:
    """Upsert the accumulated results of a run.

    The stored ``results`` array is replaced in full, so the last write for a
    ``(workflow_id, user_id)`` pair wins.
    """
    stmt = insert(WorkflowExecution).values(
        workflow_id=workflow_id,
        user_id=user_id,
        results=results,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[WorkflowExecution.workflow_id, WorkflowExecution.user_id],
        set_={"results": stmt.excluded.results, "updated_at": func.now()},
    )
    await session.execute(stmt)
    logger.info(
        "Stored %d results for workflow=%r user=%r", len(results), workflow_id, user_id
    )
