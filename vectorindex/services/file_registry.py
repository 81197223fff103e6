import json
import asyncio
import logging
from typing import Any, Dict, List, Optional

from .storage import BlobStorage

logger = logging.getLogger(__name__)

REGISTRY_KEY = "metadata/files.json"


class FileRegistry:
    """
    Read and annotate the uploaded-file registry.

    The registry is a JSON array of file records kept in blob storage, each
    with at least `id` and `s3Key` (the document's storage location).
    Uploading files is handled elsewhere; this only resolves locations and
    records indexing status.
    """

    def __init__(self, storage: BlobStorage, registry_key: str = REGISTRY_KEY):
        self.storage = storage
        self.registry_key = registry_key
        self._lock = asyncio.Lock()

    async def list_files(self) -> List[Dict[str, Any]]:
        raw = await self.storage.get(self.registry_key)
        if raw is None:
            return []
        files = json.loads(raw)
        if not isinstance(files, list):
            raise ValueError(f"File registry {self.registry_key} is not a JSON array")
        return files

    async def get_file(self, file_id: str) -> Optional[Dict[str, Any]]:
        for record in await self.list_files():
            if record.get("id") == file_id:
                return record
        return None

    async def get_storage_location(self, file_id: str) -> Optional[str]:
        record = await self.get_file(file_id)
        if record is None:
            return None
        return record.get("s3Key")

    async def update_file_metadata(self, file_id: str, updates: Dict[str, Any]) -> bool:
        """Merge `updates` into the file's record. Returns False if the file is unknown."""
        async with self._lock:
            files = await self.list_files()
            for record in files:
                if record.get("id") == file_id:
                    record.update(updates)
                    break
            else:
                logger.warning(f"File {file_id} not found in registry, metadata not updated")
                return False

            await self.storage.put(
                self.registry_key,
                json.dumps(files, indent=2).encode("utf-8"),
                content_type="application/json",
            )
            return True
