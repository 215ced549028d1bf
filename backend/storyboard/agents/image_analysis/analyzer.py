"""
Image analysis agent: describes an image and proposes a generation prompt.
"""

import json
import logging
import re
from typing import Any, Optional

from google.genai import types

from ...config import get_settings
from ...llm.gemini import image_part, query_gemini
from ...models.workflow import ImageAnalysis

logger = logging.getLogger(__name__)


ANALYSIS_PROMPT = """Analyze this image and provide:
1. Main subject and composition
2. Visual style and mood
3. Colors and lighting
4. Suggested prompt for AI image generation
5. Pose description if person is present

Format as JSON with keys: subject, style, colors, suggestedPrompt, poseDescription"""


def _extract_json(text: str) -> Optional[Any]:
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        return None
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError:
        return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


def parse_analysis(text: str) -> ImageAnalysis:
    """
    Turn the model's reply into an ImageAnalysis.

    Replies without a parseable JSON object fall back to the raw text as both
    subject and suggested prompt.
    """
    data = _extract_json(text)
    if not isinstance(data, dict):
        return ImageAnalysis(subject=text, suggested_prompt=text)

    return ImageAnalysis(
        subject=_as_text(data.get("subject")),
        style=_as_text(data.get("style")),
        colors=_as_text(data.get("colors")),
        suggested_prompt=_as_text(data.get("suggestedPrompt") or data.get("suggested_prompt")),
        pose_description=_as_text(data.get("poseDescription") or data.get("pose_description")),
    )


def analyze_image(image_url: str, model: Optional[str] = None) -> ImageAnalysis:
    settings = get_settings()
    contents = [
        image_part(image_url, timeout=settings.image_probe_timeout_seconds),
        types.Part.from_text(text=ANALYSIS_PROMPT),
    ]
    text = query_gemini(contents, model=model or settings.gemini_vision_model)
    logger.debug("Image analysis reply: %s", text[:200])
    return parse_analysis(text)
