"""
Node and edge models: the editor graph as the backend sees it.

Nodes are a discriminated union on `type` (source / text / image / group).
Field names are snake_case in Python and camelCase on the wire, so an
exported workflow file round-trips with the editor unchanged.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


NodeType = Literal["source", "text", "image", "group"]
NodeStatus = Literal["idle", "processing", "completed", "error"]
AspectRatio = Literal[
    "1:1", "9:16", "16:9", "3:4", "4:3", "3:2", "2:3", "5:4", "4:5", "21:9", "9:21"
]
Quality = Literal["Auto", "1K", "2K", "4K"]

# Canonical input handle for nodes exposing a single unified input port.
UNIFIED_INPUT_HANDLE = "any"

DEFAULT_IMAGE_MODEL = "google:4@1"
DEFAULT_TEXT_MODEL = "gemini-2.5-flash"


class FlowModel(BaseModel):
    """Base for every model that crosses the editor boundary."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Position(FlowModel):
    x: float = 0.0
    y: float = 0.0


class Dimensions(FlowModel):
    width: float
    height: float


class NodeStyle(FlowModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    width: float | None = None
    height: float | None = None


class ConnectedImage(FlowModel):
    id: str
    url: str


class ConnectedText(FlowModel):
    id: str
    content: str


class ImageMetadata(FlowModel):
    width: int
    height: int
    format: str


class UploadedImage(FlowModel):
    id: str
    url: str
    metadata: ImageMetadata


class GeneratedImageMetadata(FlowModel):
    width: int
    height: int


# ---------------------------------------------------------------------------
# Node data variants
# ---------------------------------------------------------------------------


class SourceNodeData(FlowModel):
    name: str = "Source"
    image: UploadedImage | None = None


class TextNodeData(FlowModel):
    name: str = "Text"
    content: str = ""
    prompt: str = ""
    selected_action: Literal["write", "prompt_from_image"] | None = None
    connected_source_images: list[ConnectedImage] = Field(default_factory=list)
    connected_source_texts: list[ConnectedText] = Field(default_factory=list)
    status: NodeStatus = "idle"
    error: str | None = None


class ImageNodeData(FlowModel):
    name: str = "Image"
    prompt: str = ""
    model: str = DEFAULT_IMAGE_MODEL
    aspect_ratio: AspectRatio | None = None
    quality: Quality | None = None
    selected_action: Literal["image_to_image"] | None = None
    source_image: str | None = None
    generated_image: str | None = None
    generated_image_metadata: GeneratedImageMetadata | None = None
    connected_source_images: list[ConnectedImage] = Field(default_factory=list)
    connected_source_texts: list[ConnectedText] = Field(default_factory=list)
    status: NodeStatus = "idle"
    error: str | None = None


class GroupNodeData(FlowModel):
    name: str = "New Group"
    background_color: str = "#3b82f6"


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


class BaseNode(FlowModel):
    id: str
    position: Position = Field(default_factory=Position)
    parent_id: str | None = None
    extent: Literal["parent"] | None = None
    width: float | None = None
    height: float | None = None
    measured: Dimensions | None = None
    style: NodeStyle | None = None
    selected: bool = False
    z_index: int | None = None


class SourceNode(BaseNode):
    type: Literal["source"] = "source"
    data: SourceNodeData = Field(default_factory=SourceNodeData)


class TextNode(BaseNode):
    type: Literal["text"] = "text"
    data: TextNodeData = Field(default_factory=TextNodeData)


class ImageNode(BaseNode):
    type: Literal["image"] = "image"
    data: ImageNodeData = Field(default_factory=ImageNodeData)


class GroupNode(BaseNode):
    type: Literal["group"] = "group"
    data: GroupNodeData = Field(default_factory=GroupNodeData)


Node = Annotated[
    Union[SourceNode, TextNode, ImageNode, GroupNode],
    Field(discriminator="type"),
]
ExecutableNode = Union[TextNode, ImageNode]

NodeListAdapter: TypeAdapter[list[Node]] = TypeAdapter(list[Node])


class Edge(FlowModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None


def parse_node(raw: dict[str, Any]) -> Node:
    """Validate a single editor node dict into its typed variant."""
    return NodeListAdapter.validate_python([raw])[0]


def get_display_name(node: BaseNode) -> str:
    """Node name shown to users, falling back to the node id."""
    name = getattr(node.data, "name", None)
    return name or node.id
