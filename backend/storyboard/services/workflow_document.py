"""
Workflow document: the node/edge graph edited on the canvas.

One `WorkflowDocument` owns the nodes, edges, selection and clipboard of a
workflow. Every mutation goes through `_commit`, which runs under a single
re-entrant lock and then hands an immutable `WorkflowSnapshot` to each
subscriber (history, persistence, streaming).

Structural invariants kept here:
- a node's parent always appears earlier in `nodes` than the node itself
- groups never nest (a node with `parent_id` is never a parent)
- edges have no self-loops and no duplicate (source, target) pairs
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Callable, Literal

from pydantic import ConfigDict, TypeAdapter, ValidationError

from storyboard.models.nodes import (
    UNIFIED_INPUT_HANDLE,
    BaseNode,
    Edge,
    FlowModel,
    GroupNode,
    GroupNodeData,
    ImageNode,
    Node,
    NodeListAdapter,
    NodeStyle,
    Position,
    TextNode,
)
from storyboard.models.node_registry import can_connect, get_node_spec
from storyboard.models.workflow import WORKFLOW_FILE_VERSION, WorkflowExport
from storyboard.services.workflow_utils import sort_nodes_with_parents_first

logger = logging.getLogger(__name__)

# Group geometry
GROUP_PADDING = 40
GROUP_HEADER_HEIGHT = 40
LAYOUT_GAP = 20
DEFAULT_NODE_SIZE = 240
DEFAULT_GROUP_WIDTH = 400
DEFAULT_GROUP_HEIGHT = 300
DEFAULT_GRID_CONTAINER_WIDTH = 600

# Clipboard offsets
DUPLICATE_OFFSET = 20
DUPLICATE_GROUP_OFFSET = 40
PASTE_OFFSET = 40

GroupLayout = Literal["grid", "horizontal"]

_EdgeListAdapter: TypeAdapter[list[Edge]] = TypeAdapter(list[Edge])


class InvalidWorkflowFileError(ValueError):
    """Raised when an imported workflow cannot be parsed or is inconsistent."""

    def __init__(self, detail: str | None = None):
        message = "Invalid workflow file"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class WorkflowSnapshot(FlowModel):
    """Immutable view of the document handed to subscribers."""

    model_config = ConfigDict(frozen=True)

    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...]
    selected_node_ids: tuple[str, ...] = ()
    selected_edge_ids: tuple[str, ...] = ()


SnapshotListener = Callable[[WorkflowSnapshot], None]


def new_node_id(node_type: str) -> str:
    return f"{node_type}-{uuid.uuid4().hex}"


def _node_size(node: BaseNode) -> tuple[float, float]:
    measured = node.measured
    width = measured.width if measured else None
    height = measured.height if measured else None
    if width is None:
        width = node.width if node.width is not None else DEFAULT_NODE_SIZE
    if height is None:
        height = node.height if node.height is not None else DEFAULT_NODE_SIZE
    return width, height


def _reset_generation_state(node: Node) -> Node:
    """Clear generated output and run status so a clone starts fresh."""
    if isinstance(node, ImageNode):
        data = node.data.model_copy(update={
            "generated_image": None,
            "generated_image_metadata": None,
            "status": "idle",
            "error": None,
        })
    elif isinstance(node, TextNode):
        data = node.data.model_copy(update={
            "content": "",
            "status": "idle",
            "error": None,
        })
    else:
        return node
    return node.model_copy(update={"data": data})


class WorkflowDocument:
    """
    Owner of a workflow graph.

    Reads return copies; callers never get a handle on internal lists.
    Structural operations that cannot apply (unknown ids, too few nodes to
    group) return None/False and leave the document unchanged.
    """

    def __init__(
        self,
        nodes: list[Node] | None = None,
        edges: list[Edge] | None = None,
    ):
        self._lock = threading.RLock()
        self._nodes: list[Node] = sort_nodes_with_parents_first(list(nodes or []))
        self._edges: list[Edge] = list(edges or [])
        self._selected_node_ids: list[str] = []
        self._selected_edge_ids: list[str] = []
        self._clipboard: tuple[Node, list[Node]] | None = None
        self._listeners: list[SnapshotListener] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> list[Node]:
        with self._lock:
            return list(self._nodes)

    @property
    def edges(self) -> list[Edge]:
        with self._lock:
            return list(self._edges)

    @property
    def selected_node_ids(self) -> list[str]:
        with self._lock:
            return list(self._selected_node_ids)

    @property
    def selected_edge_ids(self) -> list[str]:
        with self._lock:
            return list(self._selected_edge_ids)

    def get_node(self, node_id: str) -> Node | None:
        with self._lock:
            return next((n for n in self._nodes if n.id == node_id), None)

    def snapshot(self) -> WorkflowSnapshot:
        with self._lock:
            return WorkflowSnapshot(
                nodes=tuple(self._nodes),
                edges=tuple(self._edges),
                selected_node_ids=tuple(self._selected_node_ids),
                selected_edge_ids=tuple(self._selected_edge_ids),
            )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener for committed snapshots. Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _commit(
        self,
        *,
        nodes: list[Node] | None = None,
        edges: list[Edge] | None = None,
        selected_node_ids: list[str] | None = None,
        selected_edge_ids: list[str] | None = None,
    ) -> None:
        with self._lock:
            if nodes is not None:
                self._nodes = nodes
            if edges is not None:
                self._edges = edges
            if selected_node_ids is not None:
                self._selected_node_ids = selected_node_ids
            if selected_edge_ids is not None:
                self._selected_edge_ids = selected_edge_ids

            snapshot = self.snapshot()
            for listener in list(self._listeners):
                listener(snapshot)

    # ------------------------------------------------------------------
    # Nodes and edges
    # ------------------------------------------------------------------

    def set_nodes(self, nodes: list[Node]) -> None:
        self._commit(nodes=sort_nodes_with_parents_first(list(nodes)))

    def set_edges(self, edges: list[Edge]) -> None:
        self._commit(edges=list(edges))

    def add_node(self, node: Node) -> None:
        """Append a node and make it the only selected one."""
        with self._lock:
            nodes = [n.model_copy(update={"selected": False}) for n in self._nodes]
            nodes.append(node.model_copy(update={"selected": True}))
            self._commit(
                nodes=sort_nodes_with_parents_first(nodes),
                selected_node_ids=[node.id],
            )

    def add_edge(self, edge: Edge) -> Edge | None:
        """
        Add an edge if it is structurally valid.

        Rejects self-loops, unknown endpoints, duplicate (source, target)
        pairs and connections the node registry does not allow. The target
        handle of a unified-input node is rewritten to the canonical port.
        """
        with self._lock:
            if edge.source == edge.target:
                return None

            source = self.get_node(edge.source)
            target = self.get_node(edge.target)
            if source is None or target is None:
                return None
            if not can_connect(source.type, target.type):
                return None
            if any(e.source == edge.source and e.target == edge.target for e in self._edges):
                return None

            target_spec = get_node_spec(target.type)
            if target_spec is not None and target_spec.input_handle == UNIFIED_INPUT_HANDLE:
                edge = edge.model_copy(update={"target_handle": UNIFIED_INPUT_HANDLE})

            self._commit(edges=[*self._edges, edge])
            return edge

    def connect(
        self,
        source: str,
        target: str,
        source_handle: str | None = None,
        target_handle: str | None = None,
    ) -> Edge | None:
        edge = Edge(
            id=f"edge-{uuid.uuid4().hex}",
            source=source,
            target=target,
            source_handle=source_handle,
            target_handle=target_handle,
        )
        return self.add_edge(edge)

    def update_node_data(self, node_id: str, **patch: Any) -> bool:
        """Shallow-merge `patch` into the node's data. Unknown ids are ignored."""
        with self._lock:
            for index, node in enumerate(self._nodes):
                if node.id != node_id:
                    continue
                merged = {**node.data.model_dump(), **patch}
                data = type(node.data).model_validate(merged)
                nodes = list(self._nodes)
                nodes[index] = node.model_copy(update={"data": data})
                self._commit(nodes=nodes)
                return True
            return False

    def delete_node(self, node_id: str) -> None:
        """Remove a node, its children if it is a group, and every touching edge."""
        with self._lock:
            doomed = {node_id}
            doomed.update(n.id for n in self._nodes if n.parent_id == node_id)

            remaining_edges = [
                e for e in self._edges
                if e.source not in doomed and e.target not in doomed
            ]
            remaining_edge_ids = {e.id for e in remaining_edges}

            self._commit(
                nodes=[n for n in self._nodes if n.id not in doomed],
                edges=remaining_edges,
                selected_node_ids=[i for i in self._selected_node_ids if i not in doomed],
                selected_edge_ids=[i for i in self._selected_edge_ids if i in remaining_edge_ids],
            )

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def set_selection(self, node_ids: list[str], edge_ids: list[str]) -> None:
        self._commit(selected_node_ids=list(node_ids), selected_edge_ids=list(edge_ids))

    def set_selected_node_ids(self, node_ids: list[str]) -> None:
        self._commit(selected_node_ids=list(node_ids))

    # ------------------------------------------------------------------
    # Grouping
    # ------------------------------------------------------------------

    def group_nodes(self, node_ids: list[str]) -> str | None:
        """
        Wrap at least two ungrouped, non-group nodes in a new group.

        The group is sized to the children's bounding box plus padding and a
        header band; children are re-expressed relative to the group origin.
        """
        with self._lock:
            wanted = set(node_ids)
            members = [
                n for n in self._nodes
                if n.id in wanted and not n.parent_id and n.type != "group"
            ]
            if len(members) < 2:
                return None

            min_x = min_y = float("inf")
            max_x = max_y = float("-inf")
            for node in members:
                width, height = _node_size(node)
                min_x = min(min_x, node.position.x)
                min_y = min(min_y, node.position.y)
                max_x = max(max_x, node.position.x + width)
                max_y = max(max_y, node.position.y + height)

            origin_x = min_x - GROUP_PADDING
            origin_y = min_y - GROUP_PADDING - GROUP_HEADER_HEIGHT

            group = GroupNode(
                id=new_node_id("group"),
                position=Position(x=origin_x, y=origin_y),
                data=GroupNodeData(),
                style=NodeStyle(
                    width=max_x - min_x + GROUP_PADDING * 2,
                    height=max_y - min_y + GROUP_PADDING * 2 + GROUP_HEADER_HEIGHT,
                ),
                z_index=-1,
            )

            member_ids = {n.id for n in members}
            updated: list[Node] = []
            for node in self._nodes:
                if node.id in member_ids:
                    node = node.model_copy(update={
                        "parent_id": group.id,
                        "extent": "parent",
                        "position": Position(
                            x=node.position.x - origin_x,
                            y=node.position.y - origin_y,
                        ),
                    })
                updated.append(node)

            self._commit(
                nodes=sort_nodes_with_parents_first([group, *updated]),
                selected_node_ids=[group.id],
            )
            logger.debug("Grouped %d nodes into %s", len(members), group.id)
            return group.id

    def ungroup_node(self, group_id: str) -> list[str] | None:
        """Dissolve a group; children return to absolute positions. Returns the freed ids."""
        with self._lock:
            group = self._find_group(group_id)
            if group is None:
                return None

            freed: list[str] = []
            updated: list[Node] = []
            for node in self._nodes:
                if node.id == group_id:
                    continue
                if node.parent_id == group_id:
                    freed.append(node.id)
                    node = node.model_copy(update={
                        "parent_id": None,
                        "extent": None,
                        "position": Position(
                            x=node.position.x + group.position.x,
                            y=node.position.y + group.position.y,
                        ),
                    })
                updated.append(node)

            self._commit(nodes=updated, selected_node_ids=freed)
            return freed

    def add_nodes_to_group(self, group_id: str, node_ids: list[str]) -> bool:
        """Move ungrouped, non-group nodes into an existing group, growing it to fit."""
        with self._lock:
            group = self._find_group(group_id)
            if group is None:
                return False

            wanted = set(node_ids)
            incoming = [
                n for n in self._nodes
                if n.id in wanted and not n.parent_id and n.type != "group"
            ]
            if not incoming:
                return False

            style = group.style or NodeStyle()
            group_x, group_y = group.position.x, group.position.y
            min_x, min_y = group_x, group_y
            max_x = group_x + (style.width or DEFAULT_GROUP_WIDTH)
            max_y = group_y + (style.height or DEFAULT_GROUP_HEIGHT)

            for node in incoming:
                width, height = _node_size(node)
                min_x = min(min_x, node.position.x - GROUP_PADDING)
                min_y = min(min_y, node.position.y - GROUP_PADDING - GROUP_HEADER_HEIGHT)
                max_x = max(max_x, node.position.x + width + GROUP_PADDING)
                max_y = max(max_y, node.position.y + height + GROUP_PADDING)

            # existing children are relative to the old origin
            offset_x = group_x - min_x
            offset_y = group_y - min_y
            incoming_ids = {n.id for n in incoming}

            updated: list[Node] = []
            for node in self._nodes:
                if node.id == group_id:
                    node = node.model_copy(update={
                        "position": Position(x=min_x, y=min_y),
                        "style": style.model_copy(update={
                            "width": max_x - min_x,
                            "height": max_y - min_y,
                        }),
                    })
                elif node.parent_id == group_id and (offset_x or offset_y):
                    node = node.model_copy(update={
                        "position": Position(
                            x=node.position.x + offset_x,
                            y=node.position.y + offset_y,
                        ),
                    })
                elif node.id in incoming_ids:
                    node = node.model_copy(update={
                        "parent_id": group_id,
                        "extent": "parent",
                        "position": Position(
                            x=node.position.x - min_x,
                            y=node.position.y - min_y,
                        ),
                    })
                updated.append(node)

            self._commit(
                nodes=sort_nodes_with_parents_first(updated),
                selected_node_ids=[group_id],
            )
            return True

    def update_group_data(self, group_id: str, **patch: Any) -> bool:
        if self._find_group(group_id) is None:
            return False
        return self.update_node_data(group_id, **patch)

    def layout_group_children(self, group_id: str, layout: GroupLayout) -> bool:
        """Re-flow a group's children in a row or a grid and resize the group around them."""
        with self._lock:
            group = self._find_group(group_id)
            if group is None:
                return False
            children = [n for n in self._nodes if n.parent_id == group_id]
            if not children:
                return False

            positions: dict[str, Position] = {}

            if layout == "horizontal":
                current_x = GROUP_PADDING
                max_height = max(_node_size(c)[1] for c in children)
                for child in children:
                    positions[child.id] = Position(x=current_x, y=GROUP_PADDING + GROUP_HEADER_HEIGHT)
                    current_x += _node_size(child)[0] + LAYOUT_GAP
                group_width = current_x - LAYOUT_GAP + GROUP_PADDING
                group_height = max_height + GROUP_PADDING * 2 + GROUP_HEADER_HEIGHT
            else:
                container_width = (group.style.width if group.style else None) or DEFAULT_GRID_CONTAINER_WIDTH
                per_row = max(1, int((container_width - GROUP_PADDING * 2) // (DEFAULT_NODE_SIZE + LAYOUT_GAP)))

                current_x = GROUP_PADDING
                current_y = GROUP_PADDING + GROUP_HEADER_HEIGHT
                row_height = 0.0
                in_row = 0
                max_row_width = 0.0
                for child in children:
                    width, height = _node_size(child)
                    if in_row >= per_row:
                        current_x = GROUP_PADDING
                        current_y += row_height + LAYOUT_GAP
                        row_height = 0.0
                        in_row = 0
                    positions[child.id] = Position(x=current_x, y=current_y)
                    current_x += width + LAYOUT_GAP
                    row_height = max(row_height, height)
                    in_row += 1
                    max_row_width = max(max_row_width, current_x - LAYOUT_GAP + GROUP_PADDING)
                group_width = max_row_width
                group_height = current_y + row_height + GROUP_PADDING

            updated: list[Node] = []
            for node in self._nodes:
                if node.id in positions:
                    node = node.model_copy(update={"position": positions[node.id]})
                elif node.id == group_id:
                    style = node.style or NodeStyle()
                    node = node.model_copy(update={
                        "style": style.model_copy(update={"width": group_width, "height": group_height}),
                    })
                updated.append(node)

            self._commit(nodes=updated)
            return True

    def _find_group(self, group_id: str) -> GroupNode | None:
        node = self.get_node(group_id)
        return node if isinstance(node, GroupNode) else None

    # ------------------------------------------------------------------
    # Clipboard
    # ------------------------------------------------------------------

    def copy_node(self, node_id: str) -> bool:
        """Put a deep copy of the node (and a group's children) on the clipboard."""
        with self._lock:
            node = self.get_node(node_id)
            if node is None:
                return False
            children: list[Node] = []
            if isinstance(node, GroupNode):
                children = [n.model_copy(deep=True) for n in self._nodes if n.parent_id == node_id]
            self._clipboard = (node.model_copy(deep=True), children)
            return True

    def duplicate_node(self, node_id: str) -> str | None:
        """Clone a node next to the original. Returns the new node id."""
        with self._lock:
            node = self.get_node(node_id)
            if node is None:
                return None

            if isinstance(node, GroupNode):
                children = [n for n in self._nodes if n.parent_id == node_id]
                position = Position(
                    x=node.position.x + DUPLICATE_GROUP_OFFSET,
                    y=node.position.y + DUPLICATE_GROUP_OFFSET,
                )
                return self._insert_group_clone(node, children, position)

            position = Position(
                x=node.position.x + DUPLICATE_OFFSET,
                y=node.position.y + DUPLICATE_OFFSET,
            )
            return self._insert_clone(node, position)

    def paste_node(self, position: Position | None = None) -> str | None:
        """Paste the clipboard at `position`, or offset from where it was copied."""
        with self._lock:
            if self._clipboard is None:
                return None
            node, children = self._clipboard

            if position is None:
                position = Position(
                    x=node.position.x + PASTE_OFFSET,
                    y=node.position.y + PASTE_OFFSET,
                )

            if isinstance(node, GroupNode) and children:
                return self._insert_group_clone(node, children, position)
            return self._insert_clone(node, position)

    def _insert_clone(self, node: Node, position: Position) -> str:
        clone = _reset_generation_state(node.model_copy(deep=True)).model_copy(update={
            "id": new_node_id(node.type),
            "position": position,
            "parent_id": None,
            "extent": None,
            "selected": True,
        })
        nodes = [n.model_copy(update={"selected": False}) for n in self._nodes]
        self._commit(nodes=[*nodes, clone], selected_node_ids=[clone.id])
        return clone.id

    def _insert_group_clone(self, group: GroupNode, children: list[Node], position: Position) -> str:
        new_group = group.model_copy(deep=True).model_copy(update={
            "id": new_node_id("group"),
            "position": position,
            "selected": True,
        })
        new_children = [
            _reset_generation_state(child.model_copy(deep=True)).model_copy(update={
                "id": new_node_id(child.type),
                "parent_id": new_group.id,
                "selected": False,
            })
            for child in children
        ]
        nodes = [n.model_copy(update={"selected": False}) for n in self._nodes]
        self._commit(
            nodes=[*nodes, new_group, *new_children],
            selected_node_ids=[new_group.id],
        )
        return new_group.id

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------

    def export_workflow(self) -> str:
        """Serialize nodes and edges to the workflow file format."""
        with self._lock:
            export = WorkflowExport(nodes=list(self._nodes), edges=list(self._edges))
        return export.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    def import_workflow(self, raw: str) -> None:
        """
        Replace the document with a workflow file.

        The payload is fully parsed and checked before anything is applied,
        so a rejected file leaves the document untouched.
        """
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            logger.error("Failed to import workflow: %s", exc)
            raise InvalidWorkflowFileError("malformed JSON") from exc
        self.load_workflow(data)

    def load_workflow(self, data: Any) -> None:
        """Like `import_workflow` but for an already-decoded payload."""
        nodes, edges = parse_workflow_payload(data)
        self._commit(
            nodes=sort_nodes_with_parents_first(nodes),
            edges=edges,
            selected_node_ids=[],
            selected_edge_ids=[],
        )
        logger.info("Imported workflow with %d nodes and %d edges", len(nodes), len(edges))

    def clear_workflow(self) -> None:
        self._commit(nodes=[], edges=[], selected_node_ids=[], selected_edge_ids=[])


def parse_workflow_payload(data: Any) -> tuple[list[Node], list[Edge]]:
    """Validate a decoded workflow file into typed nodes and edges."""
    if not isinstance(data, dict):
        raise InvalidWorkflowFileError("expected a JSON object")

    version = data.get("version", WORKFLOW_FILE_VERSION)
    if version != WORKFLOW_FILE_VERSION:
        logger.warning("Importing workflow file version %s (expected %s)", version, WORKFLOW_FILE_VERSION)

    try:
        nodes = NodeListAdapter.validate_python(data.get("nodes") or [])
        edges = _EdgeListAdapter.validate_python(data.get("edges") or [])
    except ValidationError as exc:
        logger.error("Failed to import workflow: %s", exc)
        raise InvalidWorkflowFileError(f"{exc.error_count()} validation error(s)") from exc

    by_id = {n.id: n for n in nodes}
    if len(by_id) != len(nodes):
        raise InvalidWorkflowFileError("duplicate node ids")

    for node in nodes:
        if not node.parent_id:
            continue
        parent = by_id.get(node.parent_id)
        if parent is None:
            raise InvalidWorkflowFileError(f"node '{node.id}' references missing parent '{node.parent_id}'")
        if parent.parent_id:
            raise InvalidWorkflowFileError(f"node '{node.id}' is nested more than one group deep")

    return nodes, edges
