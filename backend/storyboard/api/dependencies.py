"""
Shared FastAPI dependencies.
"""
from fastapi.responses import JSONResponse

from ..errors import GenerationError
from ..services.generation_client import GenerationClient, LocalGenerationClient


def get_generation_client() -> GenerationClient:
    """Collaborator used by the API. Tests override this dependency."""
    return LocalGenerationClient()


def error_response(error: GenerationError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content={"error": str(error)})
