import os
import re
import json
import math
import uuid
import asyncio
import inspect
import logging
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from ..core.errors import IndexLoadError, LockConflict, NotFound, TriggerFailure
from ..models.checkpoint import IndexCheckpoint
from ..models.job import (
    CallbackMetrics,
    IndexJob,
    IndexStage,
    IndexStatus,
    JobCosts,
    JobProgress,
)
from ..models.vector import SearchResult, VectorMetadata
from .ann_index import create_vector_index
from .checkpoint_manager import CheckpointManager
from .embedding_providers import BaseEmbeddingProvider
from .file_registry import FileRegistry
from .job_store import JobStore
from .lock_manager import LockManager
from .progress_tracker import STAGE_ORDER, ProgressTracker, ProgressUpdate
from .storage import BlobStorage
from .worker_client import IndexingWorkerClient

logger = logging.getLogger(__name__)

INDEX_PREFIX = "vector-indexes/"
INDEX_SUFFIX = ".index"
METADATA_SUFFIX = ".metadata.json"

# Unit prices used to estimate Job.costs; not billing data
WORKER_MEMORY_GB = 0.512
WORKER_PRICE_PER_GB_SECOND = 0.0000166667
WORKER_PRICE_PER_REQUEST = 0.0000002
EMBEDDING_PRICE_PER_1K_TOKENS = 0.00002
ESTIMATED_TOKENS_PER_VECTOR = 500

# Status a job takes on while the worker reports a given stage
STAGE_STATUS = {
    IndexStage.INITIALIZATION: IndexStatus.INITIALIZING,
    IndexStage.TEXT_EXTRACTION: IndexStatus.EXTRACTING,
    IndexStage.EMBEDDING_GENERATION: IndexStatus.EMBEDDING,
    IndexStage.INDEX_BUILDING: IndexStatus.INDEXING,
    IndexStage.METADATA_STORAGE: IndexStatus.SAVING,
    IndexStage.UPLOAD: IndexStatus.UPLOADING,
}

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def index_key(file_id: str) -> str:
    return f"{INDEX_PREFIX}{file_id}{INDEX_SUFFIX}"


def metadata_key(file_id: str) -> str:
    return f"{INDEX_PREFIX}{file_id}{METADATA_SUFFIX}"


def calculate_costs(metrics: CallbackMetrics) -> JobCosts:
    """Estimate worker and embedding cost of a finished job"""
    costs = JobCosts()

    if metrics.processing_time:
        gb_seconds = WORKER_MEMORY_GB * metrics.processing_time
        costs.worker = gb_seconds * WORKER_PRICE_PER_GB_SECOND + WORKER_PRICE_PER_REQUEST

    if metrics.num_vectors:
        estimated_tokens = metrics.num_vectors * ESTIMATED_TOKENS_PER_VECTOR
        costs.embedding = (estimated_tokens / 1000) * EMBEDDING_PRICE_PER_1K_TOKENS

    costs.total = costs.worker + costs.embedding
    return costs


class JobOrchestrator:
    """
    Admit, dispatch and track vector indexing jobs, and serve searches over finished indexes.

    At most one job runs globally and per document (see LockManager). The
    index itself is built by an external worker which reports back through
    `update_job_from_callback`. All state lives in this object; construct one
    per process and pass it to whatever needs it.
    """

    def __init__(
        self,
        storage: BlobStorage,
        job_store: JobStore,
        file_registry: FileRegistry,
        worker: IndexingWorkerClient,
        embedder: BaseEmbeddingProvider,
        lock_manager: Optional[LockManager] = None,
        checkpoint_manager: Optional[CheckpointManager] = None,
        dimensions: int = 1536,
        index_type: str = "flat",
        index_params: Optional[Dict[str, int]] = None,
        temp_dir: str = "./data/temp",
        job_timeout: timedelta = timedelta(minutes=15),
        job_retention: timedelta = timedelta(days=7),
        lock_sweep_interval: float = 60,
        checkpoint_sweep_interval: float = 3600,
        retention_sweep_interval: float = 24 * 3600,
    ):
        self.storage = storage
        self.job_store = job_store
        self.file_registry = file_registry
        self.worker = worker
        self.embedder = embedder
        self.locks = lock_manager or LockManager()
        self.checkpoints = checkpoint_manager or CheckpointManager()
        self.dimensions = dimensions
        self.index_type = index_type
        self.index_params = index_params or {}
        self.temp_dir = temp_dir
        self.job_timeout = job_timeout
        self.job_retention = job_retention
        self.lock_sweep_interval = lock_sweep_interval
        self.checkpoint_sweep_interval = checkpoint_sweep_interval
        self.retention_sweep_interval = retention_sweep_interval

        self._jobs: Dict[str, IndexJob] = {}
        self._trackers: Dict[str, ProgressTracker] = {}
        self._tasks: List[asyncio.Task] = []
        self._jobs_loaded = False

        os.makedirs(self.temp_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Load persisted jobs and start the periodic maintenance sweeps"""
        try:
            await self.load_jobs()
        except Exception:
            logger.exception("Failed to load jobs from storage")

        self._tasks = [
            asyncio.create_task(self._run_periodically("lock expiry", self.lock_sweep_interval, self.locks.cleanup_expired)),
            asyncio.create_task(self._run_periodically("checkpoint expiry", self.checkpoint_sweep_interval, self.checkpoints.cleanup_expired)),
            asyncio.create_task(self._run_periodically("job retention", self.retention_sweep_interval, self.cleanup_old_jobs)),
        ]
        logger.info("Job orchestrator started")

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Job orchestrator stopped")

    async def _run_periodically(self, name: str, interval: float, fn: Callable):
        while True:
            await asyncio.sleep(interval)
            try:
                result = fn()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Periodic {name} sweep failed")

    async def load_jobs(self) -> int:
        """Read job records newer than the retention window into memory"""
        if self._jobs_loaded:
            return 0

        since = _utcnow() - self.job_retention
        loaded = 0
        for job in await self.job_store.load_all(since):
            if job.job_id in self._jobs:
                continue
            if not job.is_terminal:
                checkpoint = await self.checkpoints.load(job.job_id)
                if checkpoint is not None:
                    job.stage = checkpoint.stage
                    job.progress = checkpoint.progress
            self._jobs[job.job_id] = job
            loaded += 1

        self._jobs_loaded = True
        return loaded

    async def cleanup_old_jobs(self) -> int:
        """Delete job records older than the retention window"""
        cutoff = _utcnow() - self.job_retention
        deleted = await self.job_store.delete_older_than(cutoff)

        # Same rule as the store sweep, so memory never holds a job the store has lost
        stale = [job_id for job_id, job in self._jobs.items() if job.updated_at < cutoff]
        for job_id in stale:
            del self._jobs[job_id]
            self._trackers.pop(job_id, None)

        if deleted or stale:
            logger.info(f"✓ Cleaned up {deleted} stored and {len(stale)} in-memory old jobs")
        return deleted

    # ------------------------------------------------------------------
    # Job state helpers
    # ------------------------------------------------------------------

    async def _persist(self, job: IndexJob):
        try:
            await self.job_store.save(job)
        except Exception as e:
            logger.error(f"Failed to save job {job.job_id}: {e}")

    def _release_job_locks(self, job: IndexJob):
        # Owner-checked, so a stale job never frees a lock taken over by a forced rebuild
        self.locks.release_file(job.file_id, job.job_id)
        self.locks.release_global(job.job_id)

    def _finish_job(self, job: IndexJob, status: IndexStatus, error: Optional[str] = None) -> bool:
        """
        Move a job into a terminal status and release its locks.

        Synchronous check-and-set: returns False, changing nothing, if the job
        is already terminal.
        """
        if job.is_terminal:
            return False

        now = _utcnow()
        job.status = status
        job.updated_at = now
        if status == IndexStatus.COMPLETED:
            job.stage = IndexStage.COMPLETED
            job.progress = JobProgress(current=100, total=100, percentage=100)
            job.completed_at = now
        if error is not None:
            job.error = error

        self._release_job_locks(job)
        self._trackers.pop(job.job_id, None)
        logger.info(f"🔓 Job {job.job_id} finished as {status.value}, locks released")
        return True

    async def _after_finish(self, job: IndexJob):
        """Persist a terminal job and tidy up its side records (best effort)"""
        await self._persist(job)

        try:
            await self.checkpoints.delete(job.job_id)
        except Exception as e:
            logger.error(f"Failed to delete checkpoint for job {job.job_id}: {e}")

        if job.status == IndexStatus.COMPLETED:
            updates = {
                "indexStatus": "completed",
                "indexCompletedAt": job.completed_at.isoformat(),
                "indexKey": index_key(job.file_id),
                "metadataKey": metadata_key(job.file_id),
                "numChunks": job.num_chunks,
                "numVectors": job.num_vectors,
            }
        elif job.status == IndexStatus.FAILED:
            updates = {"indexStatus": "failed", "indexError": job.error or "Unknown error"}
        else:
            updates = {"indexStatus": job.status.value}
        await self._update_file_status(job.file_id, updates)

    async def _update_file_status(self, file_id: str, updates: Dict[str, Any]):
        try:
            await self.file_registry.update_file_metadata(file_id, updates)
        except Exception as e:
            logger.error(f"Failed to update registry status for file {file_id}: {e}")

    def _is_timed_out(self, job: IndexJob, now: datetime) -> bool:
        return (
            not job.is_terminal
            and job.completed_at is None
            and now - job.created_at > self.job_timeout
        )

    def _expire_if_timed_out(self, job: IndexJob, now: datetime) -> bool:
        if not self._is_timed_out(job, now):
            return False
        minutes = int(self.job_timeout.total_seconds() // 60)
        logger.warning(f"Job {job.job_id} has timed out after {minutes} minutes")
        return self._finish_job(
            job,
            IndexStatus.FAILED,
            error=f"Timeout: No callback received after {minutes} minutes. "
                  f"The indexing worker may have failed silently.",
        )

    # ------------------------------------------------------------------
    # Indexing jobs
    # ------------------------------------------------------------------

    async def start_indexing(self, file_id: str, file_name: str, force_rebuild: bool = False) -> str:
        """
        Admit an indexing job for a document and trigger the external worker

        Args:
            file_id: Document identifier in the file registry
            file_name: Human-readable name, passed to the worker
            force_rebuild: Take over the global and document locks if held

        Returns:
            The job id. The call returns once the worker has been triggered;
            trigger failures are recorded on the job, not raised.

        Raises:
            LockConflict: Another job holds a lock and force_rebuild is False
            NotFound: The document is not in the file registry
        """
        # Everything up to the first await runs without interleaving
        self.locks.cleanup_expired()

        if self.locks.is_globally_locked():
            if not force_rebuild:
                raise LockConflict("Another indexing job is in progress. Please wait.")
            logger.warning("Force rebuild requested, releasing existing global lock")
            self.locks.release_global()

        if self.locks.is_file_locked(file_id):
            if not force_rebuild:
                raise LockConflict(f"File {file_id} is already being indexed.")
            logger.warning(f"Force rebuild requested for file {file_id}, releasing existing lock")
            self.locks.release_file(file_id)

        job_id = str(uuid.uuid4())

        if not self.locks.acquire_global(job_id):
            raise LockConflict("Failed to acquire global lock")
        if not self.locks.acquire_file(file_id, job_id):
            self.locks.release_global(job_id)
            raise LockConflict(f"Failed to acquire lock for file {file_id}")

        job = IndexJob(job_id=job_id, file_id=file_id, file_name=file_name)
        self._jobs[job_id] = job
        await self._persist(job)

        try:
            storage_location = await self.file_registry.get_storage_location(file_id)
        except Exception as e:
            self._finish_job(job, IndexStatus.FAILED, error=f"Failed to read file registry: {e}")
            await self._persist(job)
            raise

        if storage_location is None:
            self._finish_job(job, IndexStatus.FAILED, error=f"File metadata not found for {file_id}")
            await self._persist(job)
            raise NotFound(f"File {file_id} not found")

        await self._update_file_status(file_id, {
            "indexStatus": "pending",
            "indexStartedAt": _utcnow().isoformat(),
        })

        try:
            await self.worker.trigger_indexing(storage_location, file_id, file_name, job_id)
        except TriggerFailure as e:
            logger.error(f"❌ Failed to trigger indexing for {file_name}: {e}")
            if self._finish_job(job, IndexStatus.FAILED, error=str(e)):
                await self._after_finish(job)
            return job_id

        # Other requests may have finished or advanced the job while we awaited the trigger
        if not job.is_terminal:
            if STAGE_ORDER.index(job.stage) < STAGE_ORDER.index(IndexStage.INDEX_BUILDING):
                job.status = IndexStatus.INDEXING
                job.stage = IndexStage.INDEX_BUILDING
            job.touch()
            await self._persist(job)
            logger.info(f"✅ Indexing triggered for {file_name}, job {job_id} awaits worker callback")

        return job_id

    async def get_job(self, job_id: str) -> IndexJob:
        """
        Return a job, failing it first if it has outlived the job timeout

        Raises:
            NotFound: Unknown job id
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")

        if self._expire_if_timed_out(job, _utcnow()):
            await self._after_finish(job)
        return job

    async def list_jobs(self) -> List[IndexJob]:
        """All known jobs, newest first, with timed-out jobs failed"""
        now = _utcnow()
        expired = [job for job in list(self._jobs.values()) if self._expire_if_timed_out(job, now)]
        for job in expired:
            await self._after_finish(job)

        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)

    async def update_job_from_callback(
        self,
        job_id: str,
        success: bool,
        error: Optional[str] = None,
        metrics: Optional[Union[CallbackMetrics, Dict[str, Any]]] = None,
    ) -> bool:
        """
        Apply the worker's completion callback

        Duplicate or late callbacks (job already completed, failed or
        cancelled) are ignored.

        Returns:
            True if the job was finalized by this call
        """
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning(f"Job {job_id} not found for callback update")
            return False

        if job.is_terminal:
            logger.info(f"Ignoring callback for job {job_id}: already {job.status.value}")
            return False

        try:
            if success:
                if metrics is not None:
                    if not isinstance(metrics, CallbackMetrics):
                        metrics = CallbackMetrics.model_validate(metrics)
                    job.processing_time = metrics.processing_time
                    job.num_chunks = metrics.num_chunks
                    job.num_vectors = metrics.num_vectors
                    job.stats = metrics.stats
                    job.costs = calculate_costs(metrics)
                self._finish_job(job, IndexStatus.COMPLETED)

                logger.info(f"✅ Job {job_id} completed via worker callback")
                if job.processing_time:
                    logger.info(f"   Processing time: {job.processing_time:.2f}s")
                if job.costs:
                    logger.info(f"   Estimated cost: ${job.costs.total:.6f}")
            else:
                self._finish_job(job, IndexStatus.FAILED, error=error or "Indexing worker reported a failure")
                logger.error(f"❌ Job {job_id} failed via worker callback: {job.error}")
        except Exception as e:
            logger.exception(f"Failed to process callback for job {job_id}")
            self._finish_job(job, IndexStatus.FAILED, error=f"Failed to process callback: {e}")
            raise
        finally:
            # No-op when _finish_job already released them
            self._release_job_locks(job)
            await self._after_finish(job)

        return True

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a non-terminal job. Work already handed to the worker is not aborted."""
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            return False

        self._finish_job(job, IndexStatus.CANCELLED)
        await self._after_finish(job)
        return True

    def _listen_to_tracker(self, job_id: str) -> Callable[[ProgressUpdate], None]:
        def apply(update: ProgressUpdate):
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return
            job.status = update.status
            job.stage = update.stage
            job.progress = update.progress
            job.touch()

        return apply

    def get_tracker(self, job_id: str) -> Optional[ProgressTracker]:
        return self._trackers.get(job_id)

    async def update_job_progress(
        self,
        job_id: str,
        stage: IndexStage,
        current: int,
        total: int,
        message: Optional[str] = None,
        processed_item_ids: Optional[Sequence[str]] = None,
    ) -> bool:
        """
        Record an intermediate progress report from the worker

        Reports for terminal jobs, or for a stage earlier than the one the
        job has already reached, are ignored.

        Raises:
            NotFound: Unknown job id
        """
        if stage == IndexStage.COMPLETED:
            raise ValueError("Completion is reported through the callback, not a progress report")

        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        if job.is_terminal:
            logger.info(f"Ignoring progress for job {job_id}: already {job.status.value}")
            return False

        # job.stage already reflects earlier reports and the trigger transition
        if STAGE_ORDER.index(stage) < STAGE_ORDER.index(job.stage):
            logger.info(f"Ignoring out-of-order progress for job {job_id}: {stage.value} after {job.stage.value}")
            return False

        tracker = self._trackers.get(job_id)
        if tracker is None:
            tracker = ProgressTracker(job_id, job.file_id)
            tracker.on_progress(self._listen_to_tracker(job_id))
            self._trackers[job_id] = tracker

        if tracker.current_stage != stage or tracker.current_status != STAGE_STATUS[stage]:
            tracker.set_stage(stage, STAGE_STATUS[stage])
        tracker.set_total(total)
        tracker.update(current, message)

        await self.checkpoints.save(IndexCheckpoint(
            job_id=job_id,
            file_id=job.file_id,
            status=job.status,
            stage=job.stage,
            progress=job.progress,
            processed_item_ids=list(processed_item_ids or []),
            last_processed_index=current - 1,
        ))
        await self._persist(job)
        return True

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def _load_artifacts(self, file_id: str):
        try:
            index_blob = await self.storage.get(index_key(file_id))
            metadata_blob = await self.storage.get(metadata_key(file_id))
        except Exception as e:
            raise IndexLoadError(f"Failed to load vector index for file {file_id}: {e}") from e

        if index_blob is None or metadata_blob is None:
            missing = index_key(file_id) if index_blob is None else metadata_key(file_id)
            raise IndexLoadError(f"Failed to load vector index for file {file_id}: {missing} not found")

        try:
            raw_metadata = json.loads(metadata_blob)
        except ValueError as e:
            raise IndexLoadError(f"Failed to load vector index for file {file_id}: invalid metadata: {e}") from e
        if not isinstance(raw_metadata, list):
            raise IndexLoadError(f"Failed to load vector index for file {file_id}: metadata is not a list")

        return index_blob, raw_metadata

    async def search_vector(
        self,
        file_id: str,
        query: str,
        k: int = 5,
        min_score: float = 0.0,
        query_vector: Optional[Sequence[float]] = None,
    ) -> List[SearchResult]:
        """
        Nearest-neighbor search within one document's index

        Args:
            file_id: Document whose index is searched
            query: Query text, embedded unless query_vector is given
            k: Maximum number of results
            min_score: Results scoring below this are dropped
            query_vector: Precomputed query embedding

        Returns:
            Results ordered best first, all with score >= min_score

        Raises:
            IndexLoadError: Index or metadata missing or unreadable
        """
        if not file_id:
            raise ValueError("file_id is required for vector search")
        if k < 1:
            raise ValueError("k must be at least 1")
        if query_vector is None and not query.strip():
            raise ValueError("query is required")

        index_blob, raw_metadata = await self._load_artifacts(file_id)

        index = create_vector_index(self.index_type, self.dimensions, **self.index_params)

        os.makedirs(self.temp_dir, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            prefix=f"search-{_UNSAFE_CHARS_RE.sub('_', file_id)}-",
            suffix=INDEX_SUFFIX,
            dir=self.temp_dir,
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(index_blob)

            index.load(temp_path)

            if query_vector is None:
                query_vector = await self.embedder.embed_text(query)

            hits = index.search(query_vector, k)

            results = []
            for vector_id, score in zip(hits.ids, hits.scores):
                if score < min_score:
                    continue
                if vector_id >= len(raw_metadata):
                    logger.warning(f"Vector {vector_id} of file {file_id} has no metadata entry")
                    continue
                metadata = VectorMetadata.from_raw(raw_metadata[vector_id], vector_id, file_id)
                results.append(SearchResult(
                    chunk_id=metadata.chunk_id,
                    file_id=metadata.file_id,
                    content=metadata.content,
                    score=score,
                    metadata=metadata,
                ))
            return results
        finally:
            index.clear()
            if os.path.exists(temp_path):
                os.unlink(temp_path)

    async def list_indexed_files(self) -> List[str]:
        """Ids of documents that have a completed index in storage"""
        file_ids = []
        for blob in await self.storage.list(INDEX_PREFIX):
            if not blob.key.endswith(INDEX_SUFFIX):
                continue
            file_id = blob.key[len(INDEX_PREFIX):-len(INDEX_SUFFIX)]
            if file_id and "/" not in file_id:
                file_ids.append(file_id)
        return file_ids

    async def search_all_manuals(self, query: str, k: int = 5, min_score: float = 0.5) -> List[SearchResult]:
        """
        Search every indexed document and merge the results by score

        A document that fails to search is logged and skipped.
        """
        if k < 1:
            raise ValueError("k must be at least 1")

        file_ids = await self.list_indexed_files()
        if not file_ids:
            return []

        query_vector = await self.embedder.embed_text(query)
        # Small overlap so one sparse document does not starve the global top-k
        per_file_k = math.ceil(k / len(file_ids)) + 2

        all_results: List[SearchResult] = []
        for file_id in file_ids:
            try:
                all_results.extend(await self.search_vector(
                    file_id,
                    query,
                    k=per_file_k,
                    min_score=min_score,
                    query_vector=query_vector,
                ))
            except Exception as e:
                logger.error(f"Failed to search file {file_id}: {e}")

        all_results.sort(key=lambda r: r.score, reverse=True)
        return all_results[:k]
