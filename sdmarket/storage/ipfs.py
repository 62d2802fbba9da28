"""IPFS content store over the Kubo HTTP RPC API (``/api/v0``)."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import bittensor as bt
import httpx

from sdmarket.base.config import IpfsSettings
from sdmarket.base.errors import NotInitializedError, StorageError


class IpfsStore:
    """Content-addressed store. Optional: if the node cannot be reached at
    ``initialize()`` the store stays unavailable instead of raising."""

    def __init__(
        self,
        settings: IpfsSettings,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int = 3,
    ):
        self.settings = settings
        self.api_url = settings.api_url.rstrip("/")
        self._max_retries = max_retries
        auth = None
        if settings.project_id and settings.project_secret:
            auth = httpx.BasicAuth(settings.project_id, settings.project_secret)
        self._client = httpx.AsyncClient(
            base_url=f"{self.api_url}/api/v0" if self.api_url else "",
            auth=auth,
            timeout=settings.timeout,
            transport=transport,
        )
        self._available = False
        self.version: str | None = None

    @property
    def available(self) -> bool:
        return self._available

    async def initialize(self) -> bool:
        if not self.api_url:
            bt.logging.info({"ipfs_store": {"status": "disabled", "reason": "no api_url"}})
            return False
        try:
            resp = await self._client.post("/version")
            resp.raise_for_status()
            self.version = resp.json().get("Version")
        except (httpx.HTTPError, ValueError) as e:
            bt.logging.warning({"ipfs_store": {"status": "unavailable", "error": str(e)}})
            self._available = False
            return False
        self._available = True
        bt.logging.info({"ipfs_store": {"status": "initialized", "version": self.version}})
        return True

    async def close(self) -> None:
        await self._client.aclose()

    def ensure_initialized(self) -> None:
        if not self._available:
            raise NotInitializedError("ipfs store not initialized")

    async def _post(self, path: str, **kwargs: Any) -> httpx.Response:
        """POST with retry on transport errors."""
        for attempt in range(self._max_retries):
            try:
                resp = await self._client.post(path, **kwargs)
                resp.raise_for_status()
                return resp
            except httpx.TransportError as e:
                if attempt == self._max_retries - 1:
                    raise StorageError(f"ipfs {path} failed: {e}") from e
                wait = 2 ** attempt
                bt.logging.warning({"ipfs_store": {"retry": attempt, "wait": wait, "error": str(e)}})
                await asyncio.sleep(wait)
            except httpx.HTTPStatusError as e:
                raise StorageError(f"ipfs {path} returned {e.response.status_code}") from e
        raise StorageError(f"ipfs {path}: max retries exceeded")

    async def put(self, content: bytes) -> str:
        self.ensure_initialized()
        resp = await self._post("/add", files={"file": ("data", content)}, params={"pin": "false"})
        try:
            cid = resp.json()["Hash"]
        except (ValueError, KeyError) as e:
            raise StorageError("ipfs add returned no hash") from e
        bt.logging.debug({"ipfs_put": {"cid": cid, "bytes": len(content)}})
        return cid

    async def get(self, content_id: str) -> bytes:
        self.ensure_initialized()
        resp = await self._post("/cat", params={"arg": content_id})
        return resp.content

    async def pin(self, content_id: str) -> None:
        self.ensure_initialized()
        await self._post("/pin/add", params={"arg": content_id})
        bt.logging.debug({"ipfs_pinned": content_id})

    async def put_json(self, data: dict[str, Any]) -> str:
        return await self.put(json.dumps(data, indent=2, default=str).encode())

    async def get_json(self, content_id: str) -> dict[str, Any]:
        raw = await self.get(content_id)
        try:
            return json.loads(raw)
        except ValueError as e:
            raise StorageError(f"invalid JSON content at {content_id}") from e

    def gateway_url(self, content_id: str) -> str:
        return f"{self.settings.gateway}{content_id}"


__all__ = ["IpfsStore"]
