"""
MinIO Storage Service.

Object storage for imported solicitation documents and their OCR text.
The minio client is synchronous, so async callers go through
``asyncio.to_thread``.

Usage:
    from rfp_intake.core.storage.minio_service import get_minio_service

    storage = get_minio_service()
    await storage.put_object(bucket, key, data, "application/pdf")
"""

import asyncio
import logging
from functools import lru_cache
from io import BytesIO
from typing import Optional, Protocol

from minio import Minio
from minio.error import S3Error

from rfp_intake.config import settings

logger = logging.getLogger("rfp_intake.minio")


class ObjectStore(Protocol):
    """The subset of object storage used by the import and ingestion paths."""

    async def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        ...

    async def get_object(self, bucket: str, key: str) -> bytes:
        ...


class MinIOService:
    """MinIO storage service implementation."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        secure: Optional[bool] = None,
    ):
        self.endpoint = endpoint or settings.minio_endpoint
        self.access_key = access_key or settings.minio_access_key
        self.secret_key = secret_key or settings.minio_secret_key
        self.secure = settings.minio_secure if secure is None else secure
        self._client: Optional[Minio] = None
        self._known_buckets: set = set()

    @property
    def client(self) -> Minio:
        """Get or create MinIO client (lazy initialization)."""
        if self._client is None:
            self._client = Minio(
                endpoint=self.endpoint,
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=self.secure,
            )
            logger.info(f"MinIO client initialized (endpoint={self.endpoint}, secure={self.secure})")
        return self._client

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._known_buckets:
            return
        if not self.client.bucket_exists(bucket):
            self.client.make_bucket(bucket)
            logger.info(f"Created bucket: {bucket}")
        self._known_buckets.add(bucket)

    def _put_object_sync(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        self._ensure_bucket(bucket)
        result = self.client.put_object(
            bucket_name=bucket,
            object_name=key,
            data=BytesIO(data),
            length=len(data),
            content_type=content_type,
        )
        logger.info(f"Uploaded object {bucket}/{key} ({len(data)} bytes)")
        return result.etag

    def _get_object_sync(self, bucket: str, key: str) -> bytes:
        response = None
        try:
            response = self.client.get_object(bucket, key)
            return response.read()
        finally:
            if response:
                response.close()
                response.release_conn()

    async def put_object(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        """
        Upload an object. Writing the same key again overwrites it.

        Returns:
            Object ETag
        """
        return await asyncio.to_thread(self._put_object_sync, bucket, key, data, content_type)

    async def get_object(self, bucket: str, key: str) -> bytes:
        """
        Download an object.

        Raises:
            FileNotFoundError: If the key does not exist
        """
        try:
            return await asyncio.to_thread(self._get_object_sync, bucket, key)
        except S3Error as e:
            if e.code == "NoSuchKey":
                raise FileNotFoundError(f"{bucket}/{key}") from e
            raise


@lru_cache()
def get_minio_service() -> MinIOService:
    """Get the process-wide MinIO service."""
    return MinIOService()
