"""
Errors raised by the generation collaborators (text, image, analysis).

Every error carries one human-readable message; the workflow executor only
ever surfaces `str(error)`.
"""

from __future__ import annotations

from typing import Any


DEFAULT_IMAGE_ERROR_MESSAGE = "Failed to generate image"


class GenerationError(Exception):
    """Base for collaborator failures."""

    status_code = 500


class ConfigurationError(GenerationError):
    """A required API key or endpoint is missing."""


class InvalidRequestError(GenerationError):
    """The request was rejected before reaching the provider."""

    status_code = 400


class ProviderError(GenerationError):
    """The provider answered with an error payload."""


class NetworkError(GenerationError):
    """The provider could not be reached or timed out."""


def _message_from_mapping(error: dict[str, Any]) -> str | None:
    nested = error.get("error")
    if isinstance(nested, dict):
        message = nested.get("message") or nested.get("responseContent")
        if message:
            return str(message)

    errors = error.get("errors")
    if isinstance(errors, list):
        for item in errors:
            if isinstance(item, dict) and item.get("message"):
                return str(item["message"])

    if error.get("message"):
        return str(error["message"])

    return None


def extract_provider_error_message(
    error: Any,
    fallback: str = DEFAULT_IMAGE_ERROR_MESSAGE,
) -> str:
    """
    Normalize the many shapes a provider error can take into one message.

    Checked in order: nested `{error: {message | responseContent}}`, a list
    `{errors: [{message}]}`, a direct `{code, message}` object, an exception,
    then a bare string.
    """
    if isinstance(error, dict):
        message = _message_from_mapping(error)
        if message:
            return message
        return fallback

    if isinstance(error, BaseException):
        return str(error) or fallback

    if isinstance(error, str) and error:
        return error

    return fallback
