"""S3 bulk object store.

boto3 is synchronous; calls run on a worker thread. Presigned URLs use
SigV4 so they work against private buckets.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import bittensor as bt
import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from sdmarket.base.config import S3Settings
from sdmarket.base.errors import ConfigError, NotFoundError, StorageError

from .interface import ObjectLocation, ObjectSummary, StoredObject

DEFAULT_URL_EXPIRY = 3600


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


class S3ObjectStore:
    def __init__(self, settings: S3Settings, client: Any = None):
        if not settings.bucket:
            raise ConfigError("s3 bucket is not configured")
        self.bucket = settings.bucket
        self.client = client or boto3.client(
            "s3",
            region_name=settings.region,
            endpoint_url=settings.endpoint_url or None,
            config=BotoConfig(signature_version="s3v4"),
        )

    async def _call(self, op: str, **params: Any) -> Any:
        try:
            return await asyncio.to_thread(getattr(self.client, op), Bucket=self.bucket, **params)
        except ClientError as e:
            if _error_code(e) in ("NoSuchKey", "404", "NotFound"):
                raise NotFoundError("object", params.get("Key", "")) from e
            raise StorageError(f"s3 {op} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"s3 {op} failed: {e}") from e

    async def put(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> ObjectLocation:
        result = await self._call(
            "put_object",
            Key=key,
            Body=body,
            ContentType=content_type,
            Metadata=dict(metadata or {}),
        )
        location = ObjectLocation(
            locator=f"s3://{self.bucket}/{key}",
            key=key,
            etag=str(result.get("ETag", "")).strip('"'),
        )
        bt.logging.info({"s3_put": {"key": key, "bytes": len(body), "etag": location.etag}})
        return location

    async def upload_dataset(
        self,
        submission_id: int,
        data: bytes,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> ObjectLocation:
        key = f"datasets/{submission_id}/{filename}"
        metadata = {
            "submissionId": str(submission_id),
            "uploadedAt": datetime.now(timezone.utc).isoformat(),
        }
        return await self.put(key, data, content_type, metadata)

    async def get(self, key: str) -> StoredObject:
        result = await self._call("get_object", Key=key)
        body = await asyncio.to_thread(result["Body"].read)
        return StoredObject(
            key=key,
            body=body,
            content_type=result.get("ContentType", "application/octet-stream"),
            metadata=dict(result.get("Metadata", {})),
        )

    async def delete(self, key: str) -> None:
        await self._call("delete_object", Key=key)
        bt.logging.info({"s3_delete": key})

    async def list(self, prefix: str = "") -> list[ObjectSummary]:
        result = await self._call("list_objects_v2", Prefix=prefix)
        return [
            ObjectSummary(
                key=item["Key"],
                size=int(item.get("Size", 0)),
                etag=str(item.get("ETag", "")).strip('"'),
                last_modified=item.get("LastModified"),
            )
            for item in result.get("Contents", [])
        ]

    async def exists(self, key: str) -> bool:
        try:
            await self._call("head_object", Key=key)
        except NotFoundError:
            return False
        return True

    async def presigned_download_url(self, key: str, expires_in: int = DEFAULT_URL_EXPIRY) -> str:
        return await self._presign("get_object", {"Bucket": self.bucket, "Key": key}, expires_in)

    async def presigned_upload_url(
        self, key: str, content_type: str, expires_in: int = DEFAULT_URL_EXPIRY,
    ) -> str:
        return await self._presign(
            "put_object",
            {"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            expires_in,
        )

    async def _presign(self, op: str, params: dict[str, Any], expires_in: int) -> str:
        try:
            url = await asyncio.to_thread(
                self.client.generate_presigned_url, op, Params=params, ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"presign {op} failed for {params.get('Key')}: {e}") from e
        bt.logging.debug({"s3_presigned": {"op": op, "key": params.get("Key"), "expires_in": expires_in}})
        return url


__all__ = ["DEFAULT_URL_EXPIRY", "S3ObjectStore"]
