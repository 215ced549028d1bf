"""
Image generation endpoint (Runware, uploaded straight to R2).
"""
import logging

from fastapi import APIRouter, Depends

from ...errors import GenerationError
from ...models.workflow import ErrorResponse, ImageGenerationRequest, ImageGenerationResponse
from ...services.generation_client import GenerationClient
from ..dependencies import error_response, get_generation_client

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/generate-image",
    response_model=ImageGenerationResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def generate_image(
    request: ImageGenerationRequest,
    client: GenerationClient = Depends(get_generation_client),
):
    """
    Generate one image and return its public URL and storage key.

    - `sourceImages` switches to image-to-image (reference images or a seed
      image, depending on the model's provider)
    - `aspectRatio` / `quality` pick the output size from the model's table;
      null lets the model default apply
    """
    try:
        return await client.generate_image(request)
    except GenerationError as e:
        logger.error("Image generation failed: %s", e)
        return error_response(e)
