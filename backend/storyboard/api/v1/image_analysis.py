"""
Image analysis endpoint: subject/style/colors and a suggested prompt.
"""
import logging

from fastapi import APIRouter, Depends

from ...errors import GenerationError
from ...models.workflow import ErrorResponse, ImageAnalysis, ImageAnalysisRequest
from ...services.generation_client import GenerationClient
from ..dependencies import error_response, get_generation_client

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/analyze-image",
    response_model=ImageAnalysis,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def analyze_image(
    request: ImageAnalysisRequest,
    client: GenerationClient = Depends(get_generation_client),
):
    try:
        return await client.analyze_image(request)
    except GenerationError as e:
        logger.error("Image analysis failed: %s", e)
        return error_response(e)
