"""
Text generation endpoint (Gemini, multimodal).
"""
import logging

from fastapi import APIRouter, Depends

from ...errors import GenerationError
from ...models.workflow import ErrorResponse, TextGenerationRequest, TextGenerationResponse
from ...services.generation_client import GenerationClient
from ..dependencies import error_response, get_generation_client

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/generate-text",
    response_model=TextGenerationResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def generate_text(
    request: TextGenerationRequest,
    client: GenerationClient = Depends(get_generation_client),
):
    """
    Generate text from a prompt.

    Images given as data URLs are inlined; http(s) image URLs are fetched and
    inlined before the call.
    """
    try:
        return await client.generate_text(request)
    except GenerationError as e:
        logger.error("Text generation failed: %s", e)
        return error_response(e)
