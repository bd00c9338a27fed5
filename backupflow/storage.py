# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Storage - Segment store gateway over S3-compatible storage.

Thin async adapter around aiobotocore. Every call opens its own client
through the shared session, which keeps the gateway safe to share
between the shipper task and restore callers.
"""

from typing import Any, Dict, List, Protocol

import structlog
from aiobotocore.config import AioConfig
from aiobotocore.session import get_session
from botocore.exceptions import ClientError

from backupflow.exceptions import StorageError, UploadError
from backupflow.models import StoredObject

logger = structlog.get_logger()


class SegmentStore(Protocol):
    """Operations the shipper, planner and replay engine need from storage."""

    async def put(self, key: str, data: bytes) -> None: ...

    async def get(self, key: str) -> bytes: ...

    async def list(self, prefix: str) -> List[StoredObject]: ...

    async def ensure_bucket(self, name: str) -> None: ...


class S3SegmentStore:
    """
    Segment store backed by an S3 bucket.

    Works against AWS and S3-compatible endpoints (MinIO, Ceph); a custom
    endpoint switches to path-style addressing.
    """

    def __init__(
        self,
        session: Any,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        list_batch_size: int = 1000,
    ):
        self.session = session
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.access_key = access_key
        self.secret_key = secret_key
        self.list_batch_size = list_batch_size

    @classmethod
    def from_config(cls, config: Any, session: Any = None) -> "S3SegmentStore":
        """Create a store from a BackupFlowConfig."""
        if session is None:
            session = get_session()

        return cls(
            session=session,
            bucket=config.bucket,
            region=config.region,
            endpoint_url=config.s3_endpoint,
            access_key=config.s3_access_key,
            secret_key=config.s3_secret_key,
            list_batch_size=config.s3_list_batch_size,
        )

    def _client(self):
        kwargs: Dict[str, Any] = {"region_name": self.region}
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
            kwargs["config"] = AioConfig(s3={"addressing_style": "path"})
        if self.access_key and self.secret_key:
            kwargs["aws_access_key_id"] = self.access_key
            kwargs["aws_secret_access_key"] = self.secret_key
        return self.session.create_client("s3", **kwargs)

    async def put(self, key: str, data: bytes) -> None:
        """
        Upload bytes to a key.

        Re-uploading the same key overwrites the object, which makes
        retried segment uploads idempotent.
        """
        try:
            async with self._client() as s3_client:
                await s3_client.put_object(Bucket=self.bucket, Key=key, Body=data)
        except Exception as e:
            raise UploadError(
                f"Failed to upload {key}: {e}",
                details={"bucket": self.bucket, "key": key, "size": len(data)},
            )

        logger.debug("object_uploaded", bucket=self.bucket, key=key, size=len(data))

    async def get(self, key: str) -> bytes:
        """Download an object's bytes."""
        try:
            async with self._client() as s3_client:
                response = await s3_client.get_object(Bucket=self.bucket, Key=key)
                async with response["Body"] as stream:
                    return await stream.read()
        except Exception as e:
            raise StorageError(
                f"Failed to download {key}: {e}",
                details={"bucket": self.bucket, "key": key},
            )

    async def list(self, prefix: str) -> List[StoredObject]:
        """
        List every object under a prefix.

        Args:
            prefix: Key prefix ("" lists the whole bucket)

        Returns:
            StoredObject entries in store order
        """
        objects: List[StoredObject] = []
        try:
            async with self._client() as s3_client:
                paginator = s3_client.get_paginator("list_objects_v2")
                async for page in paginator.paginate(
                    Bucket=self.bucket,
                    Prefix=prefix,
                    MaxKeys=self.list_batch_size,
                ):
                    for obj in page.get("Contents", []):
                        objects.append(
                            StoredObject(
                                key=obj["Key"],
                                last_modified=obj["LastModified"],
                                size_bytes=obj.get("Size", 0),
                            )
                        )
        except Exception as e:
            raise StorageError(
                f"Failed to list {prefix!r}: {e}",
                details={"bucket": self.bucket, "prefix": prefix},
            )

        return objects

    async def ensure_bucket(self, name: str | None = None) -> None:
        """Create the bucket if it does not exist yet."""
        bucket = name or self.bucket
        try:
            async with self._client() as s3_client:
                try:
                    await s3_client.head_bucket(Bucket=bucket)
                    return
                except ClientError as e:
                    code = e.response.get("Error", {}).get("Code", "")
                    if code not in ("404", "NoSuchBucket", "NotFound"):
                        raise

                create_kwargs: Dict[str, Any] = {"Bucket": bucket}
                if self.region and self.region != "us-east-1":
                    create_kwargs["CreateBucketConfiguration"] = {
                        "LocationConstraint": self.region
                    }
                await s3_client.create_bucket(**create_kwargs)
                logger.info("bucket_created", bucket=bucket, region=self.region)
        except Exception as e:
            raise StorageError(
                f"Failed to ensure bucket {bucket}: {e}",
                details={"bucket": bucket},
            )

    async def check_access(self) -> bool:
        """Return True when the bucket is reachable."""
        try:
            async with self._client() as s3_client:
                await s3_client.head_bucket(Bucket=self.bucket)
            return True
        except Exception as e:
            logger.warning("bucket_unreachable", bucket=self.bucket, error=str(e))
            return False
