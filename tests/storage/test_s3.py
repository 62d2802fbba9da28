"""Tests for the S3 object store using botocore's Stubber."""

import io

import boto3
import pytest
from botocore.config import Config as BotoConfig
from botocore.response import StreamingBody
from botocore.stub import ANY, Stubber

from sdmarket.base.config import S3Settings
from sdmarket.base.errors import ConfigError, NotFoundError, StorageError
from sdmarket.storage.s3 import S3ObjectStore

BUCKET = "market-datasets"


@pytest.fixture
def s3():
    client = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        config=BotoConfig(signature_version="s3v4"),
    )
    with Stubber(client) as stubber:
        yield S3ObjectStore(S3Settings(bucket=BUCKET), client=client), stubber
        stubber.assert_no_pending_responses()


def test_bucket_is_required():
    with pytest.raises(ConfigError):
        S3ObjectStore(S3Settings())


class TestObjects:

    @pytest.mark.asyncio
    async def test_upload_dataset(self, s3):
        store, stubber = s3
        stubber.add_response(
            "put_object",
            {"ETag": '"d41d8cd98f00b204e9800998ecf8427e"'},
            {
                "Bucket": BUCKET,
                "Key": "datasets/7/rows.csv",
                "Body": b"a,b\n1,2\n",
                "ContentType": "text/csv",
                "Metadata": {"submissionId": "7", "uploadedAt": ANY},
            },
        )

        location = await store.upload_dataset(7, b"a,b\n1,2\n", "rows.csv", "text/csv")

        assert location.locator == f"s3://{BUCKET}/datasets/7/rows.csv"
        assert location.etag == "d41d8cd98f00b204e9800998ecf8427e"

    @pytest.mark.asyncio
    async def test_get(self, s3):
        store, stubber = s3
        body = b"payload"
        stubber.add_response(
            "get_object",
            {
                "Body": StreamingBody(io.BytesIO(body), len(body)),
                "ContentType": "text/plain",
                "Metadata": {"submissionId": "7"},
            },
            {"Bucket": BUCKET, "Key": "datasets/7/a.txt"},
        )

        obj = await store.get("datasets/7/a.txt")

        assert obj.body == body
        assert obj.content_type == "text/plain"
        assert obj.metadata == {"submissionId": "7"}

    @pytest.mark.asyncio
    async def test_missing_key(self, s3):
        store, stubber = s3
        stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
        with pytest.raises(NotFoundError):
            await store.get("datasets/404/none")

    @pytest.mark.asyncio
    async def test_exists(self, s3):
        store, stubber = s3
        stubber.add_response("head_object", {}, {"Bucket": BUCKET, "Key": "here"})
        stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)

        assert await store.exists("here") is True
        assert await store.exists("gone") is False

    @pytest.mark.asyncio
    async def test_list(self, s3):
        store, stubber = s3
        stubber.add_response(
            "list_objects_v2",
            {"Contents": [{"Key": "datasets/7/rows.csv", "Size": 8, "ETag": '"e1"'}]},
            {"Bucket": BUCKET, "Prefix": "datasets/7/"},
        )

        [summary] = await store.list("datasets/7/")

        assert summary.key == "datasets/7/rows.csv"
        assert summary.size == 8
        assert summary.etag == "e1"

    @pytest.mark.asyncio
    async def test_access_denied_is_storage_error(self, s3):
        store, stubber = s3
        stubber.add_client_error("delete_object", service_error_code="AccessDenied", http_status_code=403)
        with pytest.raises(StorageError):
            await store.delete("datasets/7/rows.csv")


class TestPresignedUrls:

    @pytest.mark.asyncio
    async def test_download_url_is_signed(self, s3):
        store, _ = s3
        url = await store.presigned_download_url("datasets/7/rows.csv", expires_in=600)
        assert "datasets/7/rows.csv" in url
        assert "X-Amz-Signature=" in url
        assert "X-Amz-Expires=600" in url

    @pytest.mark.asyncio
    async def test_upload_url(self, s3):
        store, _ = s3
        url = await store.presigned_upload_url("datasets/8/img.png", "image/png")
        assert "datasets/8/img.png" in url
        assert "X-Amz-Expires=3600" in url
