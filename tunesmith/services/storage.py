"""
Durable object storage for generated audio (S3).

Objects live under ``{storage_key_prefix}{job_id}_{unix_ms}.mp3`` and are made
publicly readable so the stored URL can be handed straight to players.
boto3 is synchronous; the async wrappers push each call onto a worker thread
so uploads never block the event loop.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Protocol, cast

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from tunesmith.config import settings

logger = logging.getLogger(__name__)

S3_CONFIG = Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"})


class _S3Client(Protocol):
    """Structural interface for the boto3 S3 client methods used in this module."""

    def put_object(self, **kwargs: object) -> dict[str, object]: ...
    def put_object_acl(self, **kwargs: object) -> dict[str, object]: ...
    def head_object(self, *, Bucket: str, Key: str) -> dict[str, object]: ...
    def head_bucket(self, *, Bucket: str) -> dict[str, object]: ...


class StorageUnavailableError(Exception):
    """Raised when the bucket is not configured or S3 cannot be reached."""


def _s3_client() -> _S3Client:
    """Create an S3 client with SigV4 and the regional endpoint."""
    region = settings.aws_region
    # boto3 has no type stubs; cast to our Protocol at the untyped library boundary.
    return cast(
        _S3Client,
        boto3.client(
            "s3",
            region_name=region,
            endpoint_url=f"https://s3.{region}.amazonaws.com",
            config=S3_CONFIG,
        ),
    )


class DurableStorage:
    """Upload / existence-check / public URL for one S3 bucket."""

    def __init__(
        self,
        bucket: str | None = None,
        client: _S3Client | None = None,
        public_domain: str | None = None,
    ):
        self.bucket = bucket or settings.aws_s3_music_bucket
        self.public_domain = public_domain or settings.aws_cloudfront_domain
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.bucket)

    @property
    def client(self) -> _S3Client:
        if self._client is None:
            self._client = _s3_client()
        return self._client

    def _require_bucket(self) -> str:
        if not self.bucket:
            raise StorageUnavailableError("TUNESMITH_AWS_S3_MUSIC_BUCKET is not set")
        return self.bucket

    def public_url(self, key: str) -> str:
        if self.public_domain:
            return f"https://{self.public_domain}/{key}"
        return f"https://{self.bucket}.s3.{settings.aws_region}.amazonaws.com/{key}"

    def _put(self, data: bytes, key: str, content_type: str, metadata: dict[str, str]) -> None:
        try:
            self.client.put_object(
                Bucket=self._require_bucket(),
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailableError(f"S3 put_object failed for {key}: {e}") from e

    def _make_public(self, key: str) -> None:
        try:
            self.client.put_object_acl(Bucket=self._require_bucket(), Key=key, ACL="public-read")
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailableError(f"S3 put_object_acl failed for {key}: {e}") from e

    def _exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self._require_bucket(), Key=key)
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageUnavailableError(f"S3 head_object failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageUnavailableError(f"S3 head_object failed for {key}: {e}") from e

    async def upload(
        self,
        data: bytes,
        key: str,
        *,
        content_type: str = "audio/mpeg",
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Store ``data`` under ``key`` and return its public URL."""
        await asyncio.to_thread(self._put, data, key, content_type, metadata or {})
        return self.public_url(key)

    async def make_public(self, key: str) -> None:
        await asyncio.to_thread(self._make_public, key)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._exists, key)

    def check_reachable(self) -> bool:
        """Return True if the bucket is configured and reachable (for engine status)."""
        if not self.bucket:
            return False
        try:
            self.client.head_bucket(Bucket=self.bucket)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning("S3 head_bucket failed: %s", e)
            return False


_shared_storage: DurableStorage | None = None


def get_durable_storage() -> DurableStorage:
    """Return the process-wide DurableStorage singleton."""
    global _shared_storage
    if _shared_storage is None:
        _shared_storage = DurableStorage()
    return _shared_storage
