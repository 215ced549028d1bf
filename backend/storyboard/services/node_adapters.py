"""
Node execution adapters.

One adapter per executable node type. An adapter turns a node plus its
aggregated inputs into one collaborator call and maps the response to an
`AdapterResult`: the output downstream nodes will see in this run, and the
patch to merge into the node's data.

Adapters never touch the document; the executor applies the patch.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from storyboard.models.nodes import ImageNode, Node, TextNode
from storyboard.models.workflow import (
    ExecutionOutput,
    ImageAnalysis,
    ImageAnalysisRequest,
    ImageGenerationRequest,
    NodeInputs,
    TextGenerationRequest,
)
from storyboard.services.generation_client import GenerationClient
from storyboard.services.workflow_document import WorkflowDocument
from storyboard.services.workflow_utils import build_combined_prompt, get_node_inputs

logger = logging.getLogger(__name__)


class AdapterResult(BaseModel):
    output: ExecutionOutput
    patch: dict[str, Any] = Field(default_factory=dict)


NodeAdapter = Callable[[Node, NodeInputs, GenerationClient], Awaitable[AdapterResult]]


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

_registry: dict[str, NodeAdapter] = {}


def adapter(node_type: str):
    """
    Decorator that registers the adapter for a node type.

    Usage:
        @adapter("text")
        async def _run_text(node, inputs, client) -> AdapterResult:
            ...
    """
    def decorator(fn: NodeAdapter) -> NodeAdapter:
        _registry[node_type] = fn
        return fn
    return decorator


def get_adapter(node_type: str) -> NodeAdapter | None:
    return _registry.get(node_type)


def registered_types() -> list[str]:
    return sorted(_registry)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


@adapter("text")
async def _run_text(node: TextNode, inputs: NodeInputs, client: GenerationClient) -> AdapterResult:
    prompt = build_combined_prompt(node.data.prompt, inputs.texts)
    response = await client.generate_text(TextGenerationRequest(
        prompt=prompt,
        images=inputs.images,
    ))
    return AdapterResult(
        output=ExecutionOutput(text=response.text),
        patch={"content": response.text},
    )


@adapter("image")
async def _run_image(node: ImageNode, inputs: NodeInputs, client: GenerationClient) -> AdapterResult:
    data = node.data
    prompt = build_combined_prompt(data.prompt, inputs.texts)
    response = await client.generate_image(ImageGenerationRequest(
        prompt=prompt,
        model=data.model,
        source_images=[img.url for img in inputs.images],
        aspect_ratio=data.aspect_ratio,
        quality=data.quality,
    ))

    metadata = await client.probe_image_dimensions(response.image_url)
    patch: dict[str, Any] = {"generated_image": response.image_url}
    if metadata is not None:
        patch["generated_image_metadata"] = metadata

    return AdapterResult(output=ExecutionOutput(image_url=response.image_url), patch=patch)


# ---------------------------------------------------------------------------
# Single-node actions
# ---------------------------------------------------------------------------


async def prompt_from_image(
    document: WorkflowDocument,
    node_id: str,
    client: GenerationClient,
) -> ImageAnalysis | None:
    """
    Text-node action: analyze the first connected image and write the
    suggested prompt into the node's content.

    Returns None when the node is not a text node or has no connected image.
    Collaborator failures are recorded on the node and re-raised.
    """
    node = document.get_node(node_id)
    if not isinstance(node, TextNode):
        return None

    inputs = get_node_inputs(node_id, document.edges, {}, document.nodes)
    if not inputs.images:
        return None

    document.update_node_data(
        node_id,
        status="processing",
        error=None,
        selected_action="prompt_from_image",
        connected_source_images=inputs.images,
        connected_source_texts=inputs.texts,
    )
    try:
        analysis = await client.analyze_image(ImageAnalysisRequest(image_url=inputs.images[0].url))
    except Exception as e:
        logger.exception("Image analysis for node %s failed", node_id)
        document.update_node_data(node_id, status="error", error=str(e))
        raise

    document.update_node_data(node_id, content=analysis.suggested_prompt, status="completed")
    return analysis
