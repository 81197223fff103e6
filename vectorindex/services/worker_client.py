import logging
from typing import Optional

import httpx

from ..core.errors import TriggerFailure

logger = logging.getLogger(__name__)


class IndexingWorkerClient:
    """Fire-and-forget trigger for the external indexing worker.

    The worker builds the index out of process and reports back through the
    callback address; the response here only says whether it accepted the job.
    """

    def __init__(
        self,
        worker_url: str,
        callback_url: str,
        bucket: str = "",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.worker_url = worker_url
        self.callback_url = callback_url
        self.bucket = bucket
        self.timeout = timeout
        self._http_client = http_client

        if not self.worker_url:
            logger.warning("INDEXER_WORKER_URL not set - indexing triggers are disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.worker_url)

    async def trigger_indexing(self, storage_location: str, file_id: str, file_name: str, job_id: str):
        """
        Ask the worker to index a document

        Raises:
            TriggerFailure: If triggering is disabled or the worker rejects the request
        """
        if not self.enabled:
            raise TriggerFailure("Indexing worker is not configured")

        payload = {
            "s3Bucket": self.bucket,
            "s3Key": storage_location,
            "fileId": file_id,
            "fileName": file_name,
            "jobId": job_id,
            "callbackUrl": self.callback_url,
        }

        logger.info(f"Triggering indexing worker for {file_name} ({file_id}), job {job_id}")

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.worker_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.worker_url, json=payload)
        except httpx.HTTPError as e:
            raise TriggerFailure(f"Failed to reach indexing worker: {e}") from e

        if response.status_code >= 400:
            raise TriggerFailure(f"Indexing worker returned status {response.status_code}: {response.text}")

        logger.info(f"✓ Indexing worker accepted job {job_id}")
