import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from ..core.errors import NotFound
from ..models.job import CallbackMetrics, IndexStage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["indexing-callback"])

orchestrator = None

def set_orchestrator(instance):
    global orchestrator
    orchestrator = instance


class IndexingCallback(BaseModel):
    """Completion report posted by the indexing worker"""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")
    file_id: Optional[str] = Field(None, alias="fileId")
    file_name: Optional[str] = Field(None, alias="fileName")
    status: str = Field(..., description="'completed' or 'failed'")
    error: Optional[str] = None
    processing_time: Optional[float] = Field(None, alias="processingTime")
    num_chunks: Optional[int] = Field(None, alias="numChunks")
    num_vectors: Optional[int] = Field(None, alias="numVectors")
    stats: Optional[Dict[str, Any]] = None


class IndexingProgress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")
    stage: IndexStage
    current: int = Field(..., ge=0)
    total: int = Field(..., ge=0)
    message: Optional[str] = None
    processed_item_ids: Optional[List[str]] = Field(None, alias="processedItemIds")


@router.post("/indexing-callback")
async def indexing_callback(payload: IndexingCallback):
    if payload.status not in ("completed", "failed"):
        raise HTTPException(status_code=400, detail=f"Invalid status: {payload.status}")

    success = payload.status == "completed"
    metrics = None
    if success:
        metrics = CallbackMetrics(
            processing_time=payload.processing_time,
            num_chunks=payload.num_chunks,
            num_vectors=payload.num_vectors,
            stats=payload.stats,
        )

    logger.info(f"Indexing callback for job {payload.job_id}: {payload.status}")

    try:
        updated = await orchestrator.update_job_from_callback(
            payload.job_id,
            success,
            error=payload.error,
            metrics=metrics,
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "job_id": payload.job_id, "updated": updated}


@router.post("/indexing-progress")
async def indexing_progress(payload: IndexingProgress):
    """Intermediate progress report from the indexing worker"""
    try:
        updated = await orchestrator.update_job_progress(
            payload.job_id,
            payload.stage,
            payload.current,
            payload.total,
            message=payload.message,
            processed_item_ids=payload.processed_item_ids,
        )
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "job_id": payload.job_id, "updated": updated}
