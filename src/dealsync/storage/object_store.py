"""Object store abstraction and its S3 implementation.

ObjectStore is the only interface the engine uses to reach a bucket. The
engine needs two of them: the source bucket holding CSV drops and the state
bucket holding history and checkpoints. Both are S3 in production.

All boto3 calls are wrapped in asyncio.to_thread() to avoid blocking the
event loop. boto3 ``put_object`` returns only after S3 has acknowledged the
write, so a checkpoint is durable before ``put`` returns.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from src.dealsync.core.errors import ObjectStoreError

logger = structlog.get_logger(__name__)

_MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


class ObjectStore(ABC):
    """Abstract interface for bucket operations.

    Methods:
        get: Return object bytes, or None if the key does not exist.
        put: Write bytes; returns once the write is durable.
        delete: Remove a key (no error if absent).
        list: Return every key under a prefix.
        ping: Cheap connectivity check.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return object bytes, or None if the key does not exist."""
        ...

    @abstractmethod
    async def put(self, key: str, body: bytes, content_type: str = "application/json") -> None:
        """Write bytes under key."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key; absent keys are ignored."""
        ...

    @abstractmethod
    async def list(self, prefix: str = "") -> list[str]:
        """List all keys starting with prefix."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the bucket is reachable with current credentials."""
        ...


class S3ObjectStore(ObjectStore):
    """ObjectStore backed by a single S3 bucket.

    Args:
        bucket: Bucket name.
        region: AWS region.
        access_key_id: Access key; empty uses the default credential chain.
        secret_access_key: Secret for access_key_id.
        timeout_seconds: Connect/read timeout applied to every call.
    """

    def __init__(
        self,
        bucket: str,
        region: str,
        access_key_id: str = "",
        secret_access_key: str = "",
        timeout_seconds: float = 20.0,
    ) -> None:
        self._bucket = bucket
        kwargs: dict[str, Any] = {
            "region_name": region,
            "config": BotoConfig(
                connect_timeout=timeout_seconds,
                read_timeout=timeout_seconds,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        }
        if access_key_id and secret_access_key:
            kwargs["aws_access_key_id"] = access_key_id
            kwargs["aws_secret_access_key"] = secret_access_key
        self._client = boto3.client("s3", **kwargs)

    @property
    def bucket(self) -> str:
        return self._bucket

    async def get(self, key: str) -> bytes | None:
        def _get() -> bytes | None:
            try:
                response = self._client.get_object(Bucket=self._bucket, Key=key)
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") in _MISSING_KEY_CODES:
                    return None
                raise ObjectStoreError("get", key, str(exc)) from exc
            except BotoCoreError as exc:
                raise ObjectStoreError("get", key, str(exc)) from exc
            return response["Body"].read()

        return await asyncio.to_thread(_get)

    async def put(self, key: str, body: bytes, content_type: str = "application/json") -> None:
        def _put() -> None:
            try:
                self._client.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type,
                )
            except (ClientError, BotoCoreError) as exc:
                raise ObjectStoreError("put", key, str(exc)) from exc

        await asyncio.to_thread(_put)

    async def delete(self, key: str) -> None:
        def _delete() -> None:
            try:
                self._client.delete_object(Bucket=self._bucket, Key=key)
            except (ClientError, BotoCoreError) as exc:
                raise ObjectStoreError("delete", key, str(exc)) from exc

        await asyncio.to_thread(_delete)

    async def list(self, prefix: str = "") -> list[str]:
        def _list() -> list[str]:
            keys: list[str] = []
            try:
                paginator = self._client.get_paginator("list_objects_v2")
                for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                    keys.extend(obj["Key"] for obj in page.get("Contents", []))
            except (ClientError, BotoCoreError) as exc:
                raise ObjectStoreError("list", prefix, str(exc)) from exc
            return keys

        return await asyncio.to_thread(_list)

    async def ping(self) -> bool:
        def _ping() -> None:
            self._client.list_objects_v2(Bucket=self._bucket, MaxKeys=1)

        try:
            await asyncio.to_thread(_ping)
        except (ClientError, BotoCoreError) as exc:
            logger.error("s3.ping_failed", bucket=self._bucket, error=str(exc))
            return False
        logger.info("s3.ping_ok", bucket=self._bucket)
        return True
