from beanie import Document, Indexed
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IndexStatus(str, Enum):
    PENDING = "pending"
    INITIALIZING = "initializing"
    EXTRACTING = "extracting"
    EMBEDDING = "embedding"
    INDEXING = "indexing"
    SAVING = "saving"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({IndexStatus.COMPLETED, IndexStatus.FAILED, IndexStatus.CANCELLED})


class IndexStage(str, Enum):
    INITIALIZATION = "initialization"
    TEXT_EXTRACTION = "text_extraction"
    EMBEDDING_GENERATION = "embedding_generation"
    INDEX_BUILDING = "index_building"
    METADATA_STORAGE = "metadata_storage"
    UPLOAD = "upload"
    COMPLETED = "completed"


class JobProgress(BaseModel):
    current: int = 0
    total: int = 0
    percentage: int = 0
    eta: Optional[int] = None  # seconds
    message: Optional[str] = None


class JobCosts(BaseModel):
    worker: float = 0.0
    embedding: float = 0.0
    total: float = 0.0


class CallbackMetrics(BaseModel):
    """Execution metrics reported by the worker; accepts the worker's camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    processing_time: Optional[float] = Field(None, alias="processingTime")
    num_chunks: Optional[int] = Field(None, alias="numChunks")
    num_vectors: Optional[int] = Field(None, alias="numVectors")
    stats: Optional[Dict[str, Any]] = None


class IndexJob(BaseModel):
    """One request to build a vector index for a document, from PENDING to a terminal status."""

    job_id: str
    file_id: str
    file_name: str
    status: IndexStatus = IndexStatus.PENDING
    stage: IndexStage = IndexStage.INITIALIZATION
    progress: JobProgress = Field(default_factory=JobProgress)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    # Filled from the worker callback on success
    processing_time: Optional[float] = None
    num_chunks: Optional[int] = None
    num_vectors: Optional[int] = None
    stats: Optional[Dict[str, Any]] = None
    costs: Optional[JobCosts] = None

    @field_validator("created_at", "updated_at", "completed_at")
    @classmethod
    def ensure_utc(cls, v):
        # Stores may hand back naive timestamps
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def touch(self):
        self.updated_at = utcnow()


class JobDocument(Document):
    job_id: Indexed(str, unique=True)
    updated_at: datetime
    job: IndexJob

    class Settings:
        name = "vector_index_jobs"

    @classmethod
    def from_job(cls, job: IndexJob) -> "JobDocument":
        return cls(job_id=job.job_id, updated_at=job.updated_at, job=job)
