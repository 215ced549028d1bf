"""
Cloudflare R2 (S3-compatible) storage client.
Uses boto3 for S3-compatible operations.
"""
import logging
import re
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from storyboard.config import get_settings

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")
_KEY_ALPHABET = string.ascii_lowercase + string.digits


class StorageError(Exception):
    """Raised when an R2 operation fails."""


class StorageConfigError(StorageError):
    """Raised when R2 credentials or the public URL are missing."""


class PresignedUpload(BaseModel):
    upload_url: str
    public_url: str
    key: str
    expires_at: datetime


class R2Client:
    """Singleton R2 client wrapper."""

    _instance: Optional["R2Client"] = None
    _client: Optional[BaseClient] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._client is None:
            settings = get_settings()

            if not settings.r2_endpoint:
                raise StorageConfigError("R2_ENDPOINT environment variable is required")
            if not settings.r2_access_key_id:
                raise StorageConfigError("R2_ACCESS_KEY_ID environment variable is required")
            if not settings.r2_secret_access_key:
                raise StorageConfigError("R2_SECRET_ACCESS_KEY environment variable is required")

            try:
                self._client = boto3.client(
                    "s3",
                    endpoint_url=settings.r2_endpoint,
                    aws_access_key_id=settings.r2_access_key_id,
                    aws_secret_access_key=settings.r2_secret_access_key,
                    region_name="auto",
                )
            except (BotoCoreError, ValueError) as e:
                raise StorageConfigError(f"Failed to create R2 client: {str(e)}")

    @property
    def client(self) -> BaseClient:
        """Get the R2 client instance."""
        if self._client is None:
            raise RuntimeError("R2 client not initialized. Check environment variables.")
        return self._client


def get_r2() -> R2Client:
    """Get the R2 client singleton."""
    return R2Client()


def generate_key(folder: str, filename: str) -> str:
    """`{folder}/{epoch_ms}-{random}-{sanitized filename}`"""
    timestamp = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_KEY_ALPHABET) for _ in range(7))
    return f"{folder}/{timestamp}-{suffix}-{_UNSAFE_FILENAME_CHARS.sub('_', filename)}"


def public_url_for(key: str) -> str:
    base = get_settings().r2_public_url
    if not base:
        raise StorageConfigError("R2_PUBLIC_URL environment variable is required")
    return f"{base}{key}" if base.endswith("/") else f"{base}/{key}"


def generate_presigned_upload(
    folder: str = "uploads",
    content_type: Optional[str] = None,
    expires_in: Optional[int] = None,
) -> PresignedUpload:
    """
    Presign a PUT so a third party (the browser, or the image provider) can
    upload straight into the bucket.

    Blocking (boto3); call through `asyncio.to_thread` from async code.
    """
    settings = get_settings()
    expires_in = expires_in or settings.r2_presigned_expires_seconds
    key = generate_key(folder, "upload")
    public_url = public_url_for(key)

    params = {"Bucket": settings.r2_bucket, "Key": key}
    if content_type:
        params["ContentType"] = content_type

    try:
        upload_url = get_r2().client.generate_presigned_url(
            "put_object",
            Params=params,
            ExpiresIn=expires_in,
        )
    except (BotoCoreError, ClientError) as e:
        logger.error("Failed to generate presigned URL for %s: %s", key, e)
        raise StorageError("Failed to generate presigned URL") from e

    return PresignedUpload(
        upload_url=upload_url,
        public_url=public_url,
        key=key,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    )
