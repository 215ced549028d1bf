"""
Workflow-level models: export documents, execution progress and results,
and the request/response shapes of the generation collaborators.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import Field

from storyboard.models.nodes import (
    DEFAULT_IMAGE_MODEL,
    DEFAULT_TEXT_MODEL,
    AspectRatio,
    ConnectedImage,
    ConnectedText,
    Edge,
    FlowModel,
    Node,
    Quality,
)


WORKFLOW_FILE_VERSION = "1.0"


class WorkflowExport(FlowModel):
    nodes: list[Node]
    edges: list[Edge]
    exported_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = WORKFLOW_FILE_VERSION


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExecutionProgress(FlowModel):
    completed: int = 0
    total: int = 0
    current_node: str | None = None


class ExecutionOutput(FlowModel):
    image_url: str | None = None
    text: str | None = None


class NodeInputs(FlowModel):
    images: list[ConnectedImage] = Field(default_factory=list)
    texts: list[ConnectedText] = Field(default_factory=list)


class NodeExecutionResult(FlowModel):
    node_id: str
    node_type: str
    status: Literal["completed", "error"]
    output: ExecutionOutput | None = None
    error: str | None = None
    execution_time_ms: int = 0


class ExecutionSummary(FlowModel):
    completed: int
    total: int
    outputs: dict[str, ExecutionOutput]
    node_results: list[NodeExecutionResult]
    total_execution_time_ms: int


ExecutionEventType = Literal[
    "workflow_start",
    "node_start",
    "node_complete",
    "node_error",
    "workflow_complete",
    "workflow_error",
]


class ExecutionEvent(FlowModel):
    event: ExecutionEventType
    node_id: str | None = None
    node_name: str | None = None
    progress: ExecutionProgress | None = None
    output: ExecutionOutput | None = None
    error: str | None = None
    execution_order: list[str] | None = None
    nodes: list[dict[str, Any]] | None = None


# ---------------------------------------------------------------------------
# Generation collaborators
# ---------------------------------------------------------------------------


class TextGenerationRequest(FlowModel):
    prompt: str = Field(..., min_length=1)
    model: str = DEFAULT_TEXT_MODEL
    images: list[ConnectedImage] = Field(default_factory=list)


class TextGenerationResponse(FlowModel):
    text: str


class ImageGenerationRequest(FlowModel):
    prompt: str = Field(..., min_length=1)
    model: str = DEFAULT_IMAGE_MODEL
    source_images: list[str] = Field(default_factory=list)
    aspect_ratio: AspectRatio | None = None
    quality: Quality | None = None


class ImageGenerationResponse(FlowModel):
    image_url: str
    key: str


class ImageAnalysisRequest(FlowModel):
    image_url: str = Field(..., min_length=1)


class ImageAnalysis(FlowModel):
    subject: str = ""
    style: str = ""
    colors: str = ""
    suggested_prompt: str = ""
    pose_description: str | None = ""


class ErrorResponse(FlowModel):
    error: str
