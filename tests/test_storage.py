import io
import json
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx

from vectorindex.core.errors import TriggerFailure
from vectorindex.services.file_registry import FileRegistry
from vectorindex.services.storage import BlobStorage
from vectorindex.services.worker_client import IndexingWorkerClient


class TestLocalBlobStorage:

    @pytest.mark.asyncio
    async def test_put_get_delete(self, storage):
        await storage.put("jobs/a.json", b'{"a": 1}')

        assert await storage.get("jobs/a.json") == b'{"a": 1}'
        assert await storage.delete("jobs/a.json") is True
        assert await storage.get("jobs/a.json") is None
        assert await storage.delete("jobs/a.json") is False

    @pytest.mark.asyncio
    async def test_list_by_prefix(self, storage):
        await storage.put("vector-indexes/f1.index", b"x")
        await storage.put("vector-indexes/f1.metadata.json", b"[]")
        await storage.put("jobs/j1.json", b"{}")

        keys = [blob.key for blob in await storage.list("vector-indexes/")]

        assert keys == ["vector-indexes/f1.index", "vector-indexes/f1.metadata.json"]

    @pytest.mark.asyncio
    async def test_rejects_keys_outside_root(self, storage):
        with pytest.raises(ValueError):
            await storage.put("../escape.json", b"{}")

    def test_unknown_backend(self, tmp_path):
        with pytest.raises(ValueError):
            BlobStorage(storage_type="ftp", root_dir=str(tmp_path))


class TestS3BlobStorage:

    @pytest.fixture
    def s3_client(self):
        client = MagicMock()
        client.exceptions.NoSuchKey = type("NoSuchKey", (Exception,), {})
        return client

    @pytest.fixture
    def s3_storage(self, s3_client):
        return BlobStorage(storage_type="s3", bucket="manuals", s3_client=s3_client)

    def test_requires_bucket(self, s3_client):
        with pytest.raises(ValueError):
            BlobStorage(storage_type="s3", bucket="", s3_client=s3_client)

    @pytest.mark.asyncio
    async def test_put(self, s3_storage, s3_client):
        await s3_storage.put("jobs/a.json", b"{}", content_type="application/json")

        s3_client.put_object.assert_called_once_with(
            Bucket="manuals", Key="jobs/a.json", Body=b"{}", ContentType="application/json"
        )

    @pytest.mark.asyncio
    async def test_get(self, s3_storage, s3_client):
        s3_client.get_object.return_value = {"Body": io.BytesIO(b"payload")}

        assert await s3_storage.get("jobs/a.json") == b"payload"

    @pytest.mark.asyncio
    async def test_get_missing(self, s3_storage, s3_client):
        s3_client.get_object.side_effect = s3_client.exceptions.NoSuchKey()

        assert await s3_storage.get("jobs/missing.json") is None

    @pytest.mark.asyncio
    async def test_list_paginates(self, s3_storage, s3_client):
        modified = datetime(2024, 1, 1, tzinfo=timezone.utc)
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "jobs/a.json", "LastModified": modified, "Size": 2}]},
            {"Contents": [{"Key": "jobs/b.json", "LastModified": modified, "Size": 3}]},
            {},
        ]
        s3_client.get_paginator.return_value = paginator

        blobs = await s3_storage.list("jobs/")

        assert [b.key for b in blobs] == ["jobs/a.json", "jobs/b.json"]
        paginator.paginate.assert_called_once_with(Bucket="manuals", Prefix="jobs/")


class TestFileRegistry:

    @pytest.mark.asyncio
    async def test_storage_location(self, storage, registered_files):
        registry = FileRegistry(storage)

        assert await registry.get_storage_location("f1") == "uploads/f1/doc.pdf"
        assert await registry.get_storage_location("missing") is None

    @pytest.mark.asyncio
    async def test_empty_registry(self, storage):
        assert await FileRegistry(storage).list_files() == []

    @pytest.mark.asyncio
    async def test_update_file_metadata(self, storage, storage_root, registered_files):
        registry = FileRegistry(storage)

        assert await registry.update_file_metadata("f2", {"indexStatus": "pending"}) is True
        assert await registry.update_file_metadata("missing", {"indexStatus": "pending"}) is False

        saved = json.loads((storage_root / "metadata" / "files.json").read_text())
        assert saved[1]["indexStatus"] == "pending"
        assert "indexStatus" not in saved[0]


class TestIndexingWorkerClient:

    def make_client(self, handler):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return IndexingWorkerClient(
            worker_url="https://worker.example.com/index",
            callback_url="http://localhost:8000/api/indexing-callback",
            bucket="manuals",
            http_client=http_client,
        )

    @pytest.mark.asyncio
    async def test_trigger_sends_payload(self):
        received = {}

        def handler(request):
            received.update(json.loads(request.content))
            return httpx.Response(202, json={"accepted": True})

        await self.make_client(handler).trigger_indexing("uploads/f1/doc.pdf", "f1", "doc.pdf", "job-1")

        assert received == {
            "s3Bucket": "manuals",
            "s3Key": "uploads/f1/doc.pdf",
            "fileId": "f1",
            "fileName": "doc.pdf",
            "jobId": "job-1",
            "callbackUrl": "http://localhost:8000/api/indexing-callback",
        }

    @pytest.mark.asyncio
    async def test_rejected_trigger(self):
        client = self.make_client(lambda request: httpx.Response(503, text="busy"))

        with pytest.raises(TriggerFailure, match="503"):
            await client.trigger_indexing("uploads/f1/doc.pdf", "f1", "doc.pdf", "job-1")

    @pytest.mark.asyncio
    async def test_unreachable_worker(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TriggerFailure, match="reach"):
            await self.make_client(handler).trigger_indexing("uploads/f1/doc.pdf", "f1", "doc.pdf", "job-1")

    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        client = IndexingWorkerClient(worker_url="", callback_url="http://localhost:8000/api/indexing-callback")

        assert client.enabled is False
        with pytest.raises(TriggerFailure):
            await client.trigger_indexing("uploads/f1/doc.pdf", "f1", "doc.pdf", "job-1")
