"""
Node type registry: source of truth for what each node type can do.

Maps editor node type strings to their capability, ports and the node types
they are allowed to feed.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from storyboard.models.nodes import UNIFIED_INPUT_HANDLE


Capability = Literal["leaf_input", "executable", "container"]


class NodeTypeSpec(BaseModel):
    capability: Capability
    input_handle: str | None = None
    output_handle: str | None = None
    connects_to: list[str] = []


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
# Keys match the editor node `type` values.

NODE_REGISTRY: dict[str, NodeTypeSpec] = {
    "source": NodeTypeSpec(
        capability="leaf_input",
        output_handle="image",
        connects_to=["image", "text"],
    ),
    "text": NodeTypeSpec(
        capability="executable",
        input_handle=UNIFIED_INPUT_HANDLE,
        output_handle="text",
        connects_to=["image", "text"],
    ),
    "image": NodeTypeSpec(
        capability="executable",
        input_handle=UNIFIED_INPUT_HANDLE,
        output_handle="image",
        connects_to=["image", "text"],
    ),
    "group": NodeTypeSpec(
        capability="container",
    ),
}


def get_node_spec(node_type: str) -> NodeTypeSpec | None:
    """Look up a node type spec, returning None if unknown."""
    return NODE_REGISTRY.get(node_type)


def is_executable_type(node_type: str) -> bool:
    spec = get_node_spec(node_type)
    return spec is not None and spec.capability == "executable"


def can_connect(source_type: str, target_type: str) -> bool:
    spec = get_node_spec(source_type)
    return spec is not None and target_type in spec.connects_to
