import base64
import re
from typing import Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from storyboard.config import get_settings
from storyboard.errors import ConfigurationError, InvalidRequestError, NetworkError, ProviderError

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)

_client: Optional[genai.Client] = None
_client_key: Optional[str] = None


def get_gemini_client() -> genai.Client:
  """Shared Gemini client, rebuilt if the configured key changes."""
  global _client, _client_key
  api_key = get_settings().gemini_api_key
  if not api_key:
    raise ConfigurationError("GEMINI_API_KEY is not configured")
  if _client is None or _client_key != api_key:
    _client = genai.Client(api_key=api_key)
    _client_key = api_key
  return _client


def parse_data_url(url: str) -> Optional[tuple[str, bytes]]:
  """`data:<mime>;base64,<payload>` -> (mime, bytes), or None for anything else."""
  match = _DATA_URL_RE.match(url)
  if not match:
    return None
  return match.group(1), base64.b64decode(match.group(2))


def image_part(url: str, timeout: float = 30.0) -> types.Part:
  """
  Inline an image for a multimodal request. Data URLs are decoded in place;
  http(s) URLs are fetched. Blocking.
  """
  if url.startswith("data:"):
    parsed = parse_data_url(url)
    if parsed is None:
      raise InvalidRequestError("Invalid base64 image format")
    mime_type, data = parsed
    return types.Part.from_bytes(data=data, mime_type=mime_type)

  try:
    response = httpx.get(url, timeout=timeout, follow_redirects=True)
    response.raise_for_status()
  except httpx.HTTPError as e:
    raise NetworkError(f"Failed to fetch image: {e}") from e

  mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
  return types.Part.from_bytes(data=response.content, mime_type=mime_type)


def query_gemini(contents, model: Optional[str] = None) -> str:
  """Single generate_content call; provider failures become ProviderError."""
  try:
    response = get_gemini_client().models.generate_content(
      model=model or get_settings().gemini_text_model,
      contents=contents,
    )
  except genai_errors.APIError as e:
    raise ProviderError(e.message or str(e)) from e
  return response.text or ""
