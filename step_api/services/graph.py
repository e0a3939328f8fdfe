"""Workflow graph construction.

Turns the editor's ``nodes`` and ``edges`` arrays into the ordered list of
steps the dispatcher walks through:

  nodes + edges -> validate -> fold group members -> topological order

Nodes with ``type == "group"`` are containers. Every node whose ``parentId``
points at a container becomes one of its members, and the whole group is a
single step. Steps are ordered by their edges; steps with no ordering
constraint between them keep the order they had in the ``nodes`` array.
"""

from __future__ import annotations

import heapq
from typing import Any

from pydantic import ValidationError

from step_api.errors import GraphConstructionError
from step_api.schemas import Edge, GraphEntry, Node, NodeGroup

GROUP_NODE_TYPE = "group"


def _parse_nodes(raw_nodes: list[Any]) -> list[Node]:
    nodes: list[Node] = []
    seen_ids: set[str] = set()

    for idx, raw in enumerate(raw_nodes):
        if not isinstance(raw, dict):
            raise GraphConstructionError(f"Node at index {idx} is not an object")
        try:
            node = Node.model_validate(raw)
        except ValidationError as exc:
            raise GraphConstructionError(f"Node at index {idx} is invalid: {exc}") from exc

        if node.id is not None:
            if node.id in seen_ids:
                raise GraphConstructionError(f"Duplicate node id '{node.id}'")
            seen_ids.add(node.id)
        nodes.append(node)

    return nodes


def _parse_edges(raw_edges: list[Any]) -> list[Edge]:
    edges: list[Edge] = []
    for idx, raw in enumerate(raw_edges):
        if not isinstance(raw, dict):
            raise GraphConstructionError(f"Edge at index {idx} is not an object")
        try:
            edges.append(Edge.model_validate(raw))
        except ValidationError as exc:
            raise GraphConstructionError(f"Edge at index {idx} is invalid: {exc}") from exc
    return edges


def _build_units(nodes: list[Node]) -> tuple[list[GraphEntry], dict[str, int]]:
    """Fold group members into their containers.

    Returns:
        The top-level units in request order, and a map from every node id
        (members included) to the index of the unit that owns it.
    """
    groups: dict[str, NodeGroup] = {}
    for node in nodes:
        if node.type != GROUP_NODE_TYPE:
            continue
        if node.id is None:
            raise GraphConstructionError("Group nodes must have an id")
        if node.parent_id is not None:
            raise GraphConstructionError(f"Nested group '{node.id}' is not supported")
        groups[node.id] = NodeGroup(id=node.id, data=node.data)

    units: list[GraphEntry] = []
    owner: dict[str, int] = {}

    for node in nodes:
        if node.parent_id is not None:
            continue
        unit = groups[node.id] if node.type == GROUP_NODE_TYPE else node
        if node.id is not None:
            owner[node.id] = len(units)
        units.append(unit)

    for node in nodes:
        if node.parent_id is None:
            continue
        group = groups.get(node.parent_id)
        if group is None:
            raise GraphConstructionError(
                f"Node '{node.id}' references unknown group '{node.parent_id}'"
            )
        group.nodes.append(node)
        if node.id is not None:
            owner[node.id] = owner[node.parent_id]

    return units, owner


def construct_nodes_graph(nodes: list[Any], edges: list[Any]) -> list[GraphEntry]:
    """Build the ordered step list for a workflow.

    Args:
        nodes: Raw node objects. Each needs a ``type``; ``id``, ``data`` and
            ``parentId`` are optional.
        edges: Raw edge objects with ``source`` and ``target`` node ids.

    Returns:
        Steps in execution order. Each entry is either a ``Node`` or a
        ``NodeGroup``.

    Raises:
        GraphConstructionError: On malformed nodes or edges, unknown edge
            endpoints, duplicate ids, bad group membership, or a cycle.
    """
    parsed_nodes = _parse_nodes(nodes)
    parsed_edges = _parse_edges(edges)
    units, owner = _build_units(parsed_nodes)

    successors: dict[int, set[int]] = {i: set() for i in range(len(units))}
    in_degree = [0] * len(units)

    for edge in parsed_edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in owner:
                raise GraphConstructionError(f"Edge references unknown node '{endpoint}'")
        source, target = owner[edge.source], owner[edge.target]
        if source == target or target in successors[source]:
            continue
        successors[source].add(target)
        in_degree[target] += 1

    # Kahn's algorithm; the heap keeps ties in request order.
    ready = [i for i, degree in enumerate(in_degree) if degree == 0]
    heapq.heapify(ready)
    ordered: list[GraphEntry] = []

    while ready:
        current = heapq.heappop(ready)
        ordered.append(units[current])
        for nxt in successors[current]:
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                heapq.heappush(ready, nxt)

    if len(ordered) != len(units):
        raise GraphConstructionError("Workflow graph contains a cycle")

    return ordered
