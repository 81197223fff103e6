import time
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..models.job import IndexStage, IndexStatus, JobProgress

logger = logging.getLogger(__name__)

# Weight of each stage in the overall percentage; sums to 100
STAGE_WEIGHTS: Dict[IndexStage, int] = {
    IndexStage.INITIALIZATION: 5,
    IndexStage.TEXT_EXTRACTION: 15,
    IndexStage.EMBEDDING_GENERATION: 60,
    IndexStage.INDEX_BUILDING: 10,
    IndexStage.METADATA_STORAGE: 5,
    IndexStage.UPLOAD: 5,
}

STAGE_ORDER: List[IndexStage] = list(STAGE_WEIGHTS.keys())


@dataclass
class ProgressUpdate:
    status: IndexStatus
    stage: IndexStage
    progress: JobProgress
    message: Optional[str] = None


ProgressListener = Callable[[ProgressUpdate], None]


class ProgressTracker:
    """Stage-weighted progress and ETA for one job, pushed to registered listeners."""

    def __init__(self, job_id: str, file_id: str, total_items: int = 0, clock: Callable[[], float] = time.monotonic):
        self.job_id = job_id
        self.file_id = file_id
        self.total_items = total_items
        self.current_items = 0
        self.current_stage = IndexStage.INITIALIZATION
        self.current_status = IndexStatus.PENDING
        self._clock = clock
        self.start_time = clock()
        self.stage_start_time = self.start_time
        self._listeners: List[ProgressListener] = []

    def set_total(self, total: int):
        self.total_items = total

    def update(self, current: int, message: Optional[str] = None):
        self.current_items = current
        self._emit(message)

    def increment(self, amount: int = 1, message: Optional[str] = None):
        self.current_items += amount
        self._emit(message)

    def set_stage(self, stage: IndexStage, status: IndexStatus = IndexStatus.PENDING):
        """Move to a new stage; the per-stage item counter restarts at zero."""
        self.current_stage = stage
        self.current_status = status
        self.stage_start_time = self._clock()
        self.current_items = 0
        logger.info(f"Job {self.job_id} stage changed: {stage.value} ({status.value})")
        self._emit(f"Started {stage.value}")

    def set_status(self, status: IndexStatus, message: Optional[str] = None):
        self.current_status = status
        self._emit(message)

    def complete(self, message: Optional[str] = None):
        self.current_status = IndexStatus.COMPLETED
        self.current_items = self.total_items
        self._emit(message or "Completed successfully")

    def fail(self, error: str):
        self.current_status = IndexStatus.FAILED
        self._emit(f"Failed: {error}")

    def _completed_stages_weight(self) -> int:
        weight = 0
        for stage in STAGE_ORDER:
            if stage == self.current_stage:
                return weight
            weight += STAGE_WEIGHTS[stage]
        # COMPLETED (or any stage past the table) counts every stage as done
        return weight

    def _estimate_eta(self, percentage: float) -> int:
        if percentage <= 0:
            return 0
        elapsed = self._clock() - self.start_time
        remaining = elapsed * (100 / percentage) - elapsed
        return max(0, round(remaining))

    def get_progress(self) -> JobProgress:
        stage_fraction = self.current_items / self.total_items if self.total_items > 0 else 0.0
        stage_fraction = min(stage_fraction, 1.0)
        current_weight = STAGE_WEIGHTS.get(self.current_stage, 0)

        total_progress = self._completed_stages_weight() + current_weight * stage_fraction
        percentage = min(round(total_progress), 100)

        return JobProgress(
            current=self.current_items,
            total=self.total_items,
            percentage=percentage,
            eta=self._estimate_eta(min(total_progress, 100)),
        )

    def on_progress(self, listener: ProgressListener):
        self._listeners.append(listener)

    def off_progress(self, listener: ProgressListener):
        self._listeners = [l for l in self._listeners if l is not listener]

    def _emit(self, message: Optional[str] = None):
        progress = self.get_progress()
        progress.message = message
        update = ProgressUpdate(
            status=self.current_status,
            stage=self.current_stage,
            progress=progress,
            message=message,
        )
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception as e:
                logger.error(f"Progress listener error for job {self.job_id}: {e}")

    def get_stats(self) -> Dict:
        now = self._clock()
        return {
            "job_id": self.job_id,
            "file_id": self.file_id,
            "total_elapsed_seconds": round(now - self.start_time),
            "stage_elapsed_seconds": round(now - self.stage_start_time),
            "current_stage": self.current_stage,
            "current_status": self.current_status,
            "progress": self.get_progress(),
        }
