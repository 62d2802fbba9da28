"""Tests for the IPFS content store over a mocked HTTP API."""

import httpx
import pytest

from sdmarket.base.config import IpfsSettings
from sdmarket.base.errors import NotInitializedError, StorageError
from sdmarket.storage.ipfs import IpfsStore

API = "http://ipfs.test:5001"


class FakeNode:
    """Just enough of the Kubo RPC API for the store."""

    def __init__(self):
        self.blobs = {}
        self.pins = set()
        self.fail = {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api/v0")
        if path in self.fail:
            return httpx.Response(self.fail[path])
        if path == "/version":
            return httpx.Response(200, json={"Version": "0.29.0"})
        if path == "/add":
            body = request.read()
            cid = f"bafy{len(self.blobs)}"
            # multipart body; keep the JSON payload between the first "{" and last "}"
            self.blobs[cid] = body[body.index(b"{"):body.rindex(b"}") + 1]
            return httpx.Response(200, json={"Name": "data", "Hash": cid, "Size": str(len(body))})
        if path == "/cat":
            cid = request.url.params["arg"]
            if cid not in self.blobs:
                return httpx.Response(500, json={"Message": "not found"})
            return httpx.Response(200, content=self.blobs[cid])
        if path == "/pin/add":
            self.pins.add(request.url.params["arg"])
            return httpx.Response(200, json={"Pins": [request.url.params["arg"]]})
        return httpx.Response(404)


def _store(node, **overrides) -> IpfsStore:
    values = dict(api_url=API)
    values.update(overrides)
    return IpfsStore(IpfsSettings(**values), transport=httpx.MockTransport(node))


class TestIpfsStore:

    @pytest.mark.asyncio
    async def test_disabled_without_api_url(self):
        store = IpfsStore(IpfsSettings())
        assert await store.initialize() is False
        assert store.available is False
        with pytest.raises(NotInitializedError):
            await store.put(b"x")
        await store.close()

    @pytest.mark.asyncio
    async def test_unreachable_node_degrades(self):
        node = FakeNode()
        node.fail["/version"] = 503
        store = _store(node)
        assert await store.initialize() is False
        assert store.available is False
        await store.close()

    @pytest.mark.asyncio
    async def test_json_document_roundtrip_and_pin(self):
        node = FakeNode()
        store = _store(node)
        assert await store.initialize()
        assert store.version == "0.29.0"

        cid = await store.put_json({"submissionId": 1, "overallScore": 88})
        await store.pin(cid)

        assert await store.get_json(cid) == {"submissionId": 1, "overallScore": 88}
        assert cid in node.pins
        assert store.gateway_url(cid) == f"https://ipfs.io/ipfs/{cid}"
        await store.close()

    @pytest.mark.asyncio
    async def test_http_error_becomes_storage_error(self):
        node = FakeNode()
        node.fail["/add"] = 500
        store = _store(node)
        await store.initialize()
        with pytest.raises(StorageError):
            await store.put(b"payload")
        await store.close()

    @pytest.mark.asyncio
    async def test_project_credentials_use_basic_auth(self):
        node = FakeNode()
        store = _store(node, project_id="pid", project_secret="secret")
        await store.initialize()
        assert node.requests[0].headers["authorization"].startswith("Basic ")
        await store.close()

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self):
        node = FakeNode()
        calls = {"n": 0}

        def flaky(request):
            if request.url.path.endswith("/pin/add"):
                calls["n"] += 1
                if calls["n"] == 1:
                    raise httpx.ConnectError("reset", request=request)
            return node(request)

        store = IpfsStore(IpfsSettings(api_url=API), transport=httpx.MockTransport(flaky), max_retries=2)
        await store.initialize()
        await store.pin("bafy0")

        assert calls["n"] == 2
        assert "bafy0" in node.pins
        await store.close()

    @pytest.mark.asyncio
    async def test_invalid_json_content(self):
        node = FakeNode()
        node.blobs["bafybad"] = b"not json"
        store = _store(node)
        await store.initialize()
        with pytest.raises(StorageError):
            await store.get_json("bafybad")
        await store.close()
