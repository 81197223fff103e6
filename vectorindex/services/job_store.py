import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List

from pydantic import ValidationError

from ..models.job import IndexJob, JobDocument
from .storage import BlobStorage

logger = logging.getLogger(__name__)

JOBS_PREFIX = "jobs/"


class JobStore(ABC):
    """Durable storage for job records"""

    @abstractmethod
    async def save(self, job: IndexJob):
        """Write the job record, replacing any previous version"""

    @abstractmethod
    async def load_all(self, since: datetime) -> List[IndexJob]:
        """Read every job record modified at or after `since`"""

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete job records last modified before `cutoff`; returns the number deleted"""


class BlobJobStore(JobStore):
    """Job records as `jobs/<job_id>.json` blobs"""

    def __init__(self, storage: BlobStorage):
        self.storage = storage

    @staticmethod
    def _key(job_id: str) -> str:
        return f"{JOBS_PREFIX}{job_id}.json"

    async def save(self, job: IndexJob):
        await self.storage.put(
            self._key(job.job_id),
            job.model_dump_json(indent=2).encode("utf-8"),
            content_type="application/json",
        )

    async def load_all(self, since: datetime) -> List[IndexJob]:
        jobs = []
        skipped = 0
        for blob in await self.storage.list(JOBS_PREFIX):
            if not blob.key.endswith(".json"):
                continue
            if blob.last_modified < since:
                skipped += 1
                continue
            try:
                raw = await self.storage.get(blob.key)
                if raw is None:
                    continue
                jobs.append(IndexJob.model_validate_json(raw))
            except (ValidationError, ValueError) as e:
                logger.error(f"Failed to load job from {blob.key}: {e}")

        logger.info(f"✓ Loaded {len(jobs)} jobs from storage (skipped {skipped} old jobs)")
        return jobs

    async def delete_older_than(self, cutoff: datetime) -> int:
        deleted = 0
        for blob in await self.storage.list(JOBS_PREFIX):
            if blob.last_modified >= cutoff:
                continue
            try:
                await self.storage.delete(blob.key)
                deleted += 1
            except Exception as e:
                logger.error(f"Failed to delete old job {blob.key}: {e}")
        return deleted


class MongoJobStore(JobStore):
    """Job records as MongoDB documents via beanie; requires init_beanie with JobDocument"""

    async def save(self, job: IndexJob):
        existing = await JobDocument.find_one(JobDocument.job_id == job.job_id)
        if existing is None:
            await JobDocument.from_job(job).insert()
            return
        existing.job = job
        existing.updated_at = job.updated_at
        await existing.save()

    async def load_all(self, since: datetime) -> List[IndexJob]:
        docs = await JobDocument.find(JobDocument.updated_at >= since).to_list()
        logger.info(f"✓ Loaded {len(docs)} jobs from MongoDB")
        return [doc.job for doc in docs]

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await JobDocument.find(JobDocument.updated_at < cutoff).delete()
        return result.deleted_count if result is not None else 0
