"""
Text generation with Gemini, optionally grounded on connected images.
"""
import logging
from typing import List, Optional

from google.genai import types

from ...config import get_settings
from ...llm.gemini import image_part, query_gemini
from ...models.nodes import ConnectedImage

logger = logging.getLogger(__name__)


def build_contents(
    prompt: str,
    images: Optional[List[ConnectedImage]] = None,
) -> List[types.Content]:
    """
    Build a single user turn: every image first, then the prompt text.

    Blocking when an image has to be fetched over http(s).
    """
    settings = get_settings()
    parts: List[types.Part] = [
        image_part(img.url, timeout=settings.image_probe_timeout_seconds)
        for img in images or []
        if img.url
    ]
    parts.append(types.Part.from_text(text=prompt))
    return [types.Content(role="user", parts=parts)]


def generate_text(
    prompt: str,
    images: Optional[List[ConnectedImage]] = None,
    model: Optional[str] = None,
) -> str:
    """
    Generate text for a prompt.

    Args:
        prompt: The full prompt (own prompt plus any upstream text)
        images: Connected images to include as context
        model: Gemini model id; defaults to GEMINI_TEXT_MODEL

    Returns:
        The generated text, or "" when the model returned no text part

    Raises:
        ConfigurationError: GEMINI_API_KEY missing
        NetworkError: an image URL could not be fetched
        ProviderError: Gemini rejected the request
    """
    contents = build_contents(prompt, images)
    logger.info(
        "Generating text with %s (%d chars, %d images)",
        model or get_settings().gemini_text_model,
        len(prompt),
        len(images or []),
    )
    return query_gemini(contents, model=model)
