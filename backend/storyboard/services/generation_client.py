"""
Generation collaborators as seen by the workflow executor.

`GenerationClient` is the seam node adapters call through. Two
implementations ship:

- `LocalGenerationClient` calls the agents in-process (the API server's own
  executor uses this).
- `HttpGenerationClient` talks to a running storyboard API over HTTP, for
  driving workflows from scripts or another service.

Both raise `GenerationError` subclasses carrying a single message.
"""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Any

import httpx
from PIL import Image, UnidentifiedImageError

from storyboard.config import get_settings
from storyboard.errors import GenerationError, NetworkError, ProviderError
from storyboard.llm.gemini import parse_data_url
from storyboard.models.nodes import GeneratedImageMetadata
from storyboard.models.workflow import (
    ImageAnalysis,
    ImageAnalysisRequest,
    ImageGenerationRequest,
    ImageGenerationResponse,
    TextGenerationRequest,
    TextGenerationResponse,
)

logger = logging.getLogger(__name__)


def _read_image_size(content: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(content)) as img:
        return img.size


class GenerationClient:
    """Base collaborator. Subclasses implement the three generation calls."""

    async def generate_text(self, request: TextGenerationRequest) -> TextGenerationResponse:
        raise NotImplementedError

    async def generate_image(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        raise NotImplementedError

    async def analyze_image(self, request: ImageAnalysisRequest) -> ImageAnalysis:
        raise NotImplementedError

    async def probe_image_dimensions(self, url: str) -> GeneratedImageMetadata | None:
        """
        Load a generated image to read its pixel size.

        Soft failure: any fetch or decode problem is logged and None returned,
        since the image itself is still usable without metadata.
        """
        try:
            if url.startswith("data:"):
                parsed = parse_data_url(url)
                if parsed is None:
                    raise ValueError("invalid data URL")
                content = parsed[1]
            else:
                timeout = get_settings().image_probe_timeout_seconds
                async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                    response = await client.get(url)
                    response.raise_for_status()
                    content = response.content

            width, height = await asyncio.to_thread(_read_image_size, content)
        except (
            httpx.HTTPError,
            httpx.InvalidURL,
            UnidentifiedImageError,
            Image.DecompressionBombError,
            OSError,
            ValueError,
        ) as e:
            logger.warning("Could not read dimensions of generated image %s: %s", url[:100], e)
            return None

        return GeneratedImageMetadata(width=width, height=height)


class LocalGenerationClient(GenerationClient):
    """Runs the agents in this process. Blocking SDK calls go to a worker thread."""

    async def generate_text(self, request: TextGenerationRequest) -> TextGenerationResponse:
        from storyboard.agents.text_generation.generator import generate_text

        text = await asyncio.to_thread(
            generate_text,
            request.prompt,
            request.images,
            request.model,
        )
        return TextGenerationResponse(text=text)

    async def generate_image(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        from storyboard.agents.image_generation.generator import generate_image

        return await generate_image(request)

    async def analyze_image(self, request: ImageAnalysisRequest) -> ImageAnalysis:
        from storyboard.agents.image_analysis.analyzer import analyze_image

        return await asyncio.to_thread(analyze_image, request.image_url)


class HttpGenerationClient(GenerationClient):
    """Calls the `/api/v1` generation endpoints of a storyboard server."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 180.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=body)
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {path} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict) and payload.get("error"):
            raise ProviderError(str(payload["error"]))
        if response.is_error:
            raise ProviderError(f"{path} returned HTTP {response.status_code}")
        if not isinstance(payload, dict):
            raise ProviderError(f"{path} returned an unexpected response")
        return payload

    async def generate_text(self, request: TextGenerationRequest) -> TextGenerationResponse:
        payload = await self._post("/api/v1/generate-text", request.model_dump(by_alias=True))
        return TextGenerationResponse.model_validate(payload)

    async def generate_image(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        payload = await self._post("/api/v1/generate-image", request.model_dump(by_alias=True))
        return ImageGenerationResponse.model_validate(payload)

    async def analyze_image(self, request: ImageAnalysisRequest) -> ImageAnalysis:
        payload = await self._post("/api/v1/analyze-image", request.model_dump(by_alias=True))
        try:
            return ImageAnalysis.model_validate(payload)
        except ValueError as e:
            raise GenerationError(f"Malformed analysis response: {e}") from e
