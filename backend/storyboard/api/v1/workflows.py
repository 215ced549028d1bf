"""
Workflow execution endpoints.

Workflows are not stored server-side: every request carries the exported
workflow document, runs against an in-memory copy and returns the updated
nodes.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import Field

from ...errors import GenerationError
from ...models.nodes import FlowModel
from ...models.workflow import ErrorResponse, ImageAnalysis
from ...services.generation_client import GenerationClient
from ...services.node_adapters import prompt_from_image
from ...services.workflow_document import InvalidWorkflowFileError, WorkflowDocument
from ...services.workflow_executor import WorkflowExecutor, execute_workflow_streaming
from ..dependencies import error_response, get_generation_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows")


class ExecuteWorkflowRequest(FlowModel):
    workflow: Dict[str, Any]
    group_id: Optional[str] = None
    node_ids: Optional[List[str]] = None


class PromptFromImageRequest(FlowModel):
    workflow: Dict[str, Any]
    node_id: str = Field(..., min_length=1)


class PromptFromImageResponse(FlowModel):
    analysis: ImageAnalysis
    nodes: List[Dict[str, Any]]


def _load_document(workflow: Dict[str, Any]) -> WorkflowDocument:
    document = WorkflowDocument()
    document.load_workflow(workflow)
    return document


@router.post(
    "/execute",
    responses={400: {"model": ErrorResponse}},
)
async def execute_workflow(
    request: ExecuteWorkflowRequest,
    client: GenerationClient = Depends(get_generation_client),
):
    """
    Execute a workflow (or one group / an explicit node subset) and stream
    progress as Server-Sent Events.

    The final `workflow_complete` or `workflow_error` event carries the
    resulting node list.
    """
    try:
        document = _load_document(request.workflow)
    except InvalidWorkflowFileError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    executor = WorkflowExecutor(document, client)
    logger.info(
        "Streaming workflow execution (group=%s, nodes=%s)",
        request.group_id,
        request.node_ids,
    )

    return StreamingResponse(
        execute_workflow_streaming(executor, group_id=request.group_id, node_ids=request.node_ids),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.post(
    "/prompt-from-image",
    response_model=PromptFromImageResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def run_prompt_from_image(
    request: PromptFromImageRequest,
    client: GenerationClient = Depends(get_generation_client),
):
    """Fill a text node's content with a prompt suggested from its connected image."""
    try:
        document = _load_document(request.workflow)
    except InvalidWorkflowFileError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    try:
        analysis = await prompt_from_image(document, request.node_id, client)
    except GenerationError as e:
        return error_response(e)

    if analysis is None:
        return JSONResponse(
            status_code=400,
            content={"error": "Node must be a text node with a connected image"},
        )

    return PromptFromImageResponse(
        analysis=analysis,
        nodes=[n.model_dump(mode="json", by_alias=True, exclude_none=True) for n in document.nodes],
    )
