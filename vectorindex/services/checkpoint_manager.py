import json
import time
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from ..models.checkpoint import IndexCheckpoint
from .storage import BlobStorage

logger = logging.getLogger(__name__)

REMOTE_PREFIX = "checkpoints/"


class CheckpointManager:
    """
    Persist job checkpoints to local disk, mirrored to remote blob storage.

    The local copy is authoritative within a process; the remote copy is
    best effort and only consulted when the local file is missing.
    """

    def __init__(self, checkpoints_dir: str = "./data/checkpoints", remote: Optional[BlobStorage] = None):
        self.checkpoints_dir = Path(checkpoints_dir)
        self.checkpoints_dir.mkdir(parents=True, exist_ok=True)
        self.remote = remote

    @staticmethod
    def _file_name(job_id: str) -> str:
        return f"checkpoint-{job_id}.json"

    def _local_path(self, job_id: str) -> Path:
        return self.checkpoints_dir / self._file_name(job_id)

    def _write_local(self, checkpoint: IndexCheckpoint) -> str:
        data = checkpoint.model_dump_json(indent=2)
        self._local_path(checkpoint.job_id).write_text(data, encoding="utf-8")
        return data

    async def save(self, checkpoint: IndexCheckpoint):
        logger.info(f"Saving checkpoint for job {checkpoint.job_id}")
        data = self._write_local(checkpoint)

        if self.remote is not None:
            try:
                await self.remote.put(
                    REMOTE_PREFIX + self._file_name(checkpoint.job_id),
                    data.encode("utf-8"),
                    content_type="application/json",
                )
            except Exception as e:
                # Local copy is already written
                logger.error(f"Failed to mirror checkpoint for job {checkpoint.job_id}: {e}")

    async def load(self, job_id: str) -> Optional[IndexCheckpoint]:
        local_path = self._local_path(job_id)
        if local_path.exists():
            try:
                return IndexCheckpoint.model_validate_json(local_path.read_text(encoding="utf-8"))
            except ValidationError as e:
                logger.warning(f"Corrupt local checkpoint for job {job_id}: {e}")

        if self.remote is None:
            return None

        try:
            raw = await self.remote.get(REMOTE_PREFIX + self._file_name(job_id))
        except Exception as e:
            logger.error(f"Failed to load remote checkpoint for job {job_id}: {e}")
            return None
        if raw is None:
            return None

        try:
            checkpoint = IndexCheckpoint.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Corrupt remote checkpoint for job {job_id}: {e}")
            return None

        self._write_local(checkpoint)
        logger.info(f"Restored checkpoint for job {job_id} from remote storage")
        return checkpoint

    async def exists(self, job_id: str) -> bool:
        return await self.load(job_id) is not None

    async def delete(self, job_id: str):
        local_path = self._local_path(job_id)
        if local_path.exists():
            local_path.unlink()
            logger.info(f"Deleted local checkpoint for job {job_id}")

        if self.remote is not None:
            try:
                await self.remote.delete(REMOTE_PREFIX + self._file_name(job_id))
            except Exception as e:
                logger.error(f"Failed to delete remote checkpoint for job {job_id}: {e}")

    def list_all(self) -> List[str]:
        """Job ids with a local checkpoint."""
        return sorted(
            p.name[len("checkpoint-"):-len(".json")]
            for p in self.checkpoints_dir.glob("checkpoint-*.json")
        )

    def cleanup_expired(self, max_age_hours: float = 24) -> int:
        """Remove local checkpoints not modified within `max_age_hours`."""
        max_age_seconds = max_age_hours * 3600
        now = time.time()
        cleaned = 0

        for path in self.checkpoints_dir.glob("checkpoint-*.json"):
            try:
                if now - path.stat().st_mtime > max_age_seconds:
                    path.unlink()
                    cleaned += 1
            except FileNotFoundError:
                continue

        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired checkpoints")
        return cleaned
