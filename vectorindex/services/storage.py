"""
Durable blob storage for job records, checkpoints and index artifacts (local filesystem or S3)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class BlobInfo:
    key: str
    last_modified: datetime
    size: int = 0


class BlobStorage:
    """
    Key-value blob storage.

    Supports the local filesystem and AWS S3. Keys are slash-separated
    paths such as `jobs/<job_id>.json` or `vector-indexes/<file_id>.index`.
    """

    def __init__(
        self,
        storage_type: str = "local",
        root_dir: str = "./data/storage",
        bucket: Optional[str] = None,
        region: str = "us-east-1",
        s3_client=None,
    ):
        self.storage_type = storage_type

        if storage_type == "local":
            self.root_dir = Path(root_dir)
            self.root_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Using local blob storage at {self.root_dir}")
        elif storage_type == "s3":
            if not bucket:
                raise ValueError("S3 storage requires a bucket name")
            if s3_client is None:
                import boto3

                s3_client = boto3.client("s3", region_name=region)
            self.s3_client = s3_client
            self.bucket = bucket
            logger.info(f"Using S3 blob storage with bucket {self.bucket}")
        else:
            raise ValueError(f"Unknown storage type: {storage_type}")

    def _local_path(self, key: str) -> Path:
        path = (self.root_dir / key).resolve()
        if self.root_dir.resolve() not in path.parents:
            raise ValueError(f"Invalid storage key: {key}")
        return path

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream"):
        """Write a blob, replacing any existing one."""
        if self.storage_type == "local":
            path = self._local_path(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            with open(tmp_path, "wb") as f:
                f.write(data)
            tmp_path.replace(path)
        else:
            await asyncio.to_thread(
                self.s3_client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )

    async def get(self, key: str) -> Optional[bytes]:
        """Read a blob. Returns None if it does not exist."""
        if self.storage_type == "local":
            path = self._local_path(key)
            if not path.exists():
                return None
            with open(path, "rb") as f:
                return f.read()

        try:
            response = await asyncio.to_thread(self.s3_client.get_object, Bucket=self.bucket, Key=key)
        except self.s3_client.exceptions.NoSuchKey:
            return None
        return await asyncio.to_thread(response["Body"].read)

    async def delete(self, key: str) -> bool:
        if self.storage_type == "local":
            path = self._local_path(key)
            if path.exists():
                path.unlink()
                return True
            return False

        await asyncio.to_thread(self.s3_client.delete_object, Bucket=self.bucket, Key=key)
        return True

    async def list(self, prefix: str = "") -> List[BlobInfo]:
        """List blobs whose key starts with `prefix`."""
        if self.storage_type == "local":
            results = []
            for path in self.root_dir.rglob("*"):
                if not path.is_file() or path.name.endswith(".tmp"):
                    continue
                key = path.relative_to(self.root_dir).as_posix()
                if not key.startswith(prefix):
                    continue
                stat = path.stat()
                results.append(
                    BlobInfo(
                        key=key,
                        last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                        size=stat.st_size,
                    )
                )
            return sorted(results, key=lambda b: b.key)

        return await asyncio.to_thread(self._list_s3, prefix)

    def _list_s3(self, prefix: str) -> List[BlobInfo]:
        results = []
        paginator = self.s3_client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                results.append(
                    BlobInfo(key=obj["Key"], last_modified=obj["LastModified"], size=obj.get("Size", 0))
                )
        return results
