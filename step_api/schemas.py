"""Pydantic v2 request/response and graph schemas for the step API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Step request / response
# ---------------------------------------------------------------------------


class StepRequest(BaseModel):
    """Request body for a workflow step.

    Only ``nodes`` is required. The remaining fields fall back to empty values
    when they are absent or of the wrong shape.
    """

    nodes: list[Any] = Field(..., description="Workflow nodes (required)")
    edges: list[Any] = Field(default_factory=list, description="Edges between nodes")
    workflow_id: str = Field(default="", description="Workflow identifier")
    user_id: str = Field(default="", description="Owner of the workflow run")
    trigger_output: Any = Field(
        default_factory=dict, description="Trigger payload keying the run state"
    )
    webhook_body: Any = Field(
        default_factory=dict, description="Body of the webhook that started the run"
    )

    @field_validator("edges", mode="before")
    @classmethod
    def _edges_or_empty(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []

    @field_validator("workflow_id", "user_id", mode="before")
    @classmethod
    def _string_or_empty(cls, value: Any) -> Any:
        return value if isinstance(value, str) else ""


# ---------------------------------------------------------------------------
# Workflow graph
# ---------------------------------------------------------------------------


class Node(BaseModel):
    """A single workflow node as sent by the editor."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str | None = None
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    parent_id: str | None = Field(default=None, alias="parentId")

    @field_validator("id", "parent_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def is_group(self) -> bool:
        return False


class NodeGroup(BaseModel):
    """A group container whose member nodes execute together as one step."""

    id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    nodes: list[Node] = Field(default_factory=list)

    @property
    def is_group(self) -> bool:
        return True


class Edge(BaseModel):
    """A directed dependency between two nodes."""

    model_config = ConfigDict(extra="ignore")

    source: str
    target: str

    @field_validator("source", "target", mode="before")
    @classmethod
    def _coerce_endpoint(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


GraphEntry = Node | NodeGroup
