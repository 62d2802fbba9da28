"""Storage protocols.

``ContentStore`` is content-addressed (IPFS); ``ObjectStore`` is bulk
object storage (S3). Both are optional collaborators: the quality engine
degrades to "no durable report" when the content store is unavailable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable


@dataclass
class ObjectLocation:
    locator: str
    key: str
    etag: str


@dataclass
class StoredObject:
    key: str
    body: bytes
    content_type: str = "application/octet-stream"
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ObjectSummary:
    key: str
    size: int
    etag: str
    last_modified: datetime | None = None


@runtime_checkable
class ContentStore(Protocol):
    """Interface for content-addressed storage."""

    @property
    def available(self) -> bool:
        ...

    async def put(self, content: bytes) -> str:
        """Store content, return its content id."""
        ...

    async def get(self, content_id: str) -> bytes:
        ...

    async def pin(self, content_id: str) -> None:
        ...

    async def put_json(self, data: dict[str, Any]) -> str:
        ...

    def gateway_url(self, content_id: str) -> str:
        ...


@runtime_checkable
class ObjectStore(Protocol):
    """Interface for bulk object storage."""

    async def put(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> ObjectLocation:
        ...

    async def get(self, key: str) -> StoredObject:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def list(self, prefix: str = "") -> list[ObjectSummary]:
        ...

    async def presigned_download_url(self, key: str, expires_in: int = 3600) -> str:
        ...

    async def presigned_upload_url(self, key: str, content_type: str, expires_in: int = 3600) -> str:
        ...


__all__ = ["ContentStore", "ObjectLocation", "ObjectStore", "ObjectSummary", "StoredObject"]
