"""
Graph traversal helpers for workflow execution.

Pure functions over node/edge lists: ordering, edge filtering relative to a
node subset, upstream input aggregation and prompt validation. Nothing here
mutates its arguments.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict, deque
from typing import Iterable, Mapping, Sequence

from pydantic import BaseModel

from storyboard.models.nodes import (
    BaseNode,
    ConnectedImage,
    ConnectedText,
    Edge,
    ImageNode,
    Node,
    SourceNode,
    TextNode,
    get_display_name,
)
from storyboard.models.node_registry import is_executable_type
from storyboard.models.workflow import ExecutionOutput, NodeInputs

logger = logging.getLogger(__name__)

_HTML_TAG_RE = re.compile(r"<[^>]*>")


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def sort_nodes_with_parents_first(nodes: Sequence[BaseNode]) -> list[BaseNode]:
    """
    Reorder so every parent precedes its children.

    Otherwise stable: a child is only moved when its parent appears later,
    in which case the parent is pulled forward to just before it.
    """
    node_map = {n.id: n for n in nodes}
    ordered: list[BaseNode] = []
    visited: set[str] = set()

    def visit(node_id: str) -> None:
        if node_id in visited:
            return
        node = node_map.get(node_id)
        if node is None:
            return
        visited.add(node_id)
        if node.parent_id and node.parent_id in node_map:
            visit(node.parent_id)
        ordered.append(node)

    for node in nodes:
        visit(node.id)
    return ordered


def _build_dependency_graph(
    node_ids: Sequence[str],
    edges: Iterable[Edge],
) -> tuple[dict[str, int], dict[str, list[str]]]:
    """
    Build in-degree counts and adjacency restricted to `node_ids`.

    Edges with an endpoint outside the subset are ignored; repeated
    (source, target) pairs count once.
    """
    in_set = set(node_ids)
    in_degree: dict[str, int] = {nid: 0 for nid in node_ids}
    adjacency: dict[str, list[str]] = defaultdict(list)
    seen: set[tuple[str, str]] = set()

    for edge in edges:
        if edge.source not in in_set or edge.target not in in_set:
            continue
        pair = (edge.source, edge.target)
        if pair in seen:
            continue
        seen.add(pair)
        adjacency[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    return in_degree, adjacency


def topological_order(
    nodes: Sequence[BaseNode],
    edges: Iterable[Edge],
) -> tuple[list[BaseNode], list[str]]:
    """
    Kahn's algorithm over a node subset.

    Returns `(ordered_nodes, cyclic_ids)`. Ties are broken FIFO in original
    node order. Nodes left over because of a cycle are appended in their
    original relative order and reported in `cyclic_ids`.
    """
    node_map = {n.id: n for n in nodes}
    ids = list(node_map)
    in_degree, adjacency = _build_dependency_graph(ids, edges)

    queue: deque[str] = deque(nid for nid in ids if in_degree[nid] == 0)
    order: list[str] = []

    while queue:
        nid = queue.popleft()
        order.append(nid)
        for neighbor in adjacency[nid]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    cyclic: list[str] = []
    if len(order) != len(ids):
        emitted = set(order)
        cyclic = [nid for nid in ids if nid not in emitted]
        logger.warning(
            "Possible cycle detected in workflow graph; appending %d node(s) in original order: %s",
            len(cyclic),
            cyclic,
        )
        order.extend(cyclic)

    return [node_map[nid] for nid in order], cyclic


def topological_sort(nodes: Sequence[BaseNode], edges: Iterable[Edge]) -> list[BaseNode]:
    """Nodes in execution order (dependencies first). Never drops a node."""
    ordered, _ = topological_order(nodes, edges)
    return ordered


# ---------------------------------------------------------------------------
# Subsets
# ---------------------------------------------------------------------------


def get_relevant_edges(node_ids: Iterable[str], edges: Iterable[Edge]) -> list[Edge]:
    """Every edge that feeds a node in the subset; sources may be external."""
    targets = set(node_ids)
    return [e for e in edges if e.target in targets]


def get_group_children(group_id: str, nodes: Iterable[Node]) -> list[Node]:
    return [n for n in nodes if n.parent_id == group_id]


def get_executable_nodes(nodes: Iterable[BaseNode]) -> list[BaseNode]:
    return [n for n in nodes if is_executable_type(n.type)]


# ---------------------------------------------------------------------------
# Input aggregation
# ---------------------------------------------------------------------------


def get_node_inputs(
    node_id: str,
    edges: Iterable[Edge],
    execution_outputs: Mapping[str, ExecutionOutput],
    all_nodes: Iterable[Node],
) -> NodeInputs:
    """
    Collect the images and texts visible to `node_id` from its upstream nodes.

    A same-run output recorded in `execution_outputs` wins over whatever the
    upstream node has persisted in its data.
    """
    node_map = {n.id: n for n in all_nodes}
    inputs = NodeInputs()

    for edge in edges:
        if edge.target != node_id:
            continue
        source = node_map.get(edge.source)
        if source is None:
            continue

        fresh = execution_outputs.get(edge.source)
        if fresh is not None and (fresh.image_url or fresh.text):
            if fresh.image_url:
                inputs.images.append(ConnectedImage(id=source.id, url=fresh.image_url))
            if fresh.text:
                inputs.texts.append(ConnectedText(id=source.id, content=fresh.text))
            continue

        if isinstance(source, SourceNode):
            if source.data.image and source.data.image.url:
                inputs.images.append(ConnectedImage(id=source.id, url=source.data.image.url))
        elif isinstance(source, ImageNode):
            if source.data.generated_image:
                inputs.images.append(ConnectedImage(id=source.id, url=source.data.generated_image))
        elif isinstance(source, TextNode):
            if source.data.content:
                inputs.texts.append(ConnectedText(id=source.id, content=source.data.content))

    return inputs


def get_node_input_images(
    node_id: str,
    edges: Iterable[Edge],
    execution_outputs: Mapping[str, ExecutionOutput],
    all_nodes: Iterable[Node],
) -> list[ConnectedImage]:
    return get_node_inputs(node_id, edges, execution_outputs, all_nodes).images


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class PromptValidation(BaseModel):
    valid: bool
    invalid_nodes: list[str]
    invalid_node_ids: list[str]


def validate_node_prompts(nodes: Iterable[Node]) -> PromptValidation:
    """Every executable node needs a non-blank prompt; sources are exempt."""
    invalid_names: list[str] = []
    invalid_ids: list[str] = []

    for node in nodes:
        if not is_executable_type(node.type):
            continue
        prompt = getattr(node.data, "prompt", "") or ""
        if not prompt.strip():
            invalid_names.append(get_display_name(node))
            invalid_ids.append(node.id)

    return PromptValidation(
        valid=not invalid_ids,
        invalid_nodes=invalid_names,
        invalid_node_ids=invalid_ids,
    )


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------


def strip_html(content: str) -> str:
    return _HTML_TAG_RE.sub("", content).strip()


def build_combined_prompt(prompt: str, texts: Iterable[ConnectedText]) -> str:
    """Own prompt followed by each non-empty upstream text, blank-line separated."""
    segments = [s for s in (strip_html(t.content) for t in texts) if s]
    if not segments:
        return prompt
    return "\n\n".join([prompt, *segments])
