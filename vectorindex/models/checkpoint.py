from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from .job import IndexStatus, IndexStage, JobProgress, utcnow


class IndexCheckpoint(BaseModel):
    """Point-in-time snapshot of a job's processing state, used to resume after a restart."""

    job_id: str
    file_id: Optional[str] = None
    status: IndexStatus
    stage: IndexStage
    progress: JobProgress = Field(default_factory=JobProgress)
    processed_item_ids: List[str] = Field(default_factory=list)
    last_processed_index: int = -1
    retry_count: int = 0
    last_updated: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None
