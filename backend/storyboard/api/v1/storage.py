"""
Presigned upload URLs so the editor can upload source images straight to R2.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import Field

from ...models.nodes import FlowModel
from ...models.workflow import ErrorResponse
from ...storage.r2 import StorageConfigError, StorageError, generate_presigned_upload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/storage")


class PresignedUploadRequest(FlowModel):
    folder: Optional[str] = None
    content_type: Optional[str] = None
    expires_in: Optional[int] = Field(None, ge=60, le=86400)


class PresignedUploadResponse(FlowModel):
    upload_url: str
    public_url: str
    key: str
    expires_at: datetime


@router.post(
    "/presigned",
    response_model=PresignedUploadResponse,
    responses={503: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def create_presigned_upload(request: PresignedUploadRequest):
    try:
        presigned = await asyncio.to_thread(
            generate_presigned_upload,
            folder=request.folder or "uploads",
            content_type=request.content_type,
            expires_in=request.expires_in,
        )
    except StorageConfigError as e:
        logger.error("R2 storage not configured: %s", e)
        return JSONResponse(status_code=503, content={"error": "R2 storage not configured"})
    except StorageError as e:
        logger.error("Failed to generate presigned URL: %s", e)
        return JSONResponse(status_code=500, content={"error": "Failed to generate upload URL"})

    return PresignedUploadResponse(**presigned.model_dump())
