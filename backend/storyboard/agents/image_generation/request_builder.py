"""
Builds provider-aware Runware `imageInference` tasks.

Parameters a provider does not understand are left out rather than sent and
ignored: reference-image providers (google, bfl, bytedance) get a
`referenceImages` list, everything else gets a single `seedImage` with a
`strength`.
"""

import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ...models.model_specs import get_provider_capabilities

DEFAULT_STRENGTH = 0.8


class ImageGenerationParams(BaseModel):
    prompt: str
    model: str
    seed_images: List[str] = Field(default_factory=list)
    width: Optional[int] = None
    height: Optional[int] = None
    steps: Optional[int] = None
    strength: Optional[float] = None
    negative_prompt: Optional[str] = None
    upload_endpoint: Optional[str] = None


def build_model_provider_request(params: ImageGenerationParams) -> Dict[str, Any]:
    capabilities = get_provider_capabilities(params.model)

    request: Dict[str, Any] = {
        "positivePrompt": params.prompt,
        "model": params.model,
        "width": params.width or 1024,
        "height": params.height or 1024,
        "outputType": "URL",
        "outputFormat": "PNG",
        "numberResults": 1,
    }

    if capabilities.supports_steps and params.steps:
        request["steps"] = params.steps

    if capabilities.supports_negative_prompt and params.negative_prompt:
        request["negativePrompt"] = params.negative_prompt

    seed_images = [url for url in params.seed_images if url]
    if seed_images:
        if capabilities.supports_reference_images:
            limit = capabilities.max_reference_images or len(seed_images)
            request["referenceImages"] = seed_images[:limit]
        elif capabilities.supports_seed_image:
            request["seedImage"] = seed_images[0]
            if capabilities.supports_strength:
                strength = params.strength if params.strength is not None else DEFAULT_STRENGTH
                if capabilities.min_strength:
                    strength = max(strength, capabilities.min_strength)
                request["strength"] = strength

    if params.upload_endpoint:
        request["uploadEndpoint"] = params.upload_endpoint

    return request


def build_inference_task(params: ImageGenerationParams) -> Dict[str, Any]:
    """Wrap the provider request as a Runware task with a fresh taskUUID."""
    return {
        "taskType": "imageInference",
        "taskUUID": str(uuid.uuid4()),
        **build_model_provider_request(params),
    }
