"""
Image generation through Runware's HTTP task API.

The generated PNG is not proxied through this service: Runware uploads it
straight to a presigned R2 URL and we hand back the matching public URL.
"""
import asyncio
import logging
from typing import Any, Dict, List

import httpx

from ...config import get_settings
from ...errors import ConfigurationError, NetworkError, ProviderError, extract_provider_error_message
from ...models.model_specs import get_dimensions
from ...models.workflow import ImageGenerationRequest, ImageGenerationResponse
from ...storage.r2 import StorageConfigError, StorageError, generate_presigned_upload
from .request_builder import ImageGenerationParams, build_inference_task

logger = logging.getLogger(__name__)

GENERATED_FOLDER = "generated"


async def run_image_inference(task: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    POST one imageInference task and return its result entries.

    Raises:
        ConfigurationError: RUNWARE_API_KEY missing
        NetworkError: Runware unreachable or timed out
        ProviderError: Runware answered with errors or no images
    """
    settings = get_settings()
    if not settings.runware_api_key:
        raise ConfigurationError("RUNWARE_API_KEY is not configured")

    try:
        async with httpx.AsyncClient(timeout=settings.runware_timeout_seconds) as client:
            response = await client.post(
                settings.runware_api_url,
                json=[task],
                headers={"Authorization": f"Bearer {settings.runware_api_key}"},
            )
    except httpx.HTTPError as e:
        raise NetworkError(f"Runware request failed: {e}") from e

    try:
        payload = response.json()
    except ValueError:
        payload = None

    if response.is_error or not isinstance(payload, dict):
        message = extract_provider_error_message(
            payload if payload is not None else response.text,
        )
        raise ProviderError(message)

    if payload.get("errors"):
        raise ProviderError(extract_provider_error_message(payload))

    results = [
        item for item in payload.get("data", [])
        if item.get("taskUUID") in (None, task["taskUUID"])
    ]
    if not results:
        raise ProviderError("No images returned from generation")
    return results


async def generate_image(request: ImageGenerationRequest) -> ImageGenerationResponse:
    settings = get_settings()
    if not settings.runware_api_key:
        raise ConfigurationError("RUNWARE_API_KEY is not configured")

    dimensions = get_dimensions(request.model, request.quality, request.aspect_ratio)

    try:
        presigned = await asyncio.to_thread(
            generate_presigned_upload,
            folder=GENERATED_FOLDER,
            content_type="image/png",
        )
    except StorageConfigError as e:
        raise ConfigurationError(str(e)) from e
    except StorageError as e:
        raise ProviderError(str(e)) from e

    task = build_inference_task(ImageGenerationParams(
        prompt=request.prompt,
        model=request.model,
        seed_images=request.source_images,
        width=dimensions.width,
        height=dimensions.height,
        upload_endpoint=presigned.upload_url,
    ))

    logger.info(
        "Generating %dx%d image with %s (%d source images)",
        dimensions.width,
        dimensions.height,
        request.model,
        len(request.source_images),
    )
    await run_image_inference(task)

    return ImageGenerationResponse(image_url=presigned.public_url, key=presigned.key)
