from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional

from ..core.errors import IndexLoadError, LockConflict, NotFound
from ..models.job import IndexJob
from ..models.vector import SearchRequest, SearchResult

router = APIRouter(prefix="/api/vector-index", tags=["vector-index"])

orchestrator = None

def set_orchestrator(instance):
    global orchestrator
    orchestrator = instance


class StartIndexingRequest(BaseModel):
    file_id: str = Field(..., min_length=1, description="Document id in the file registry")
    file_name: str = Field(..., min_length=1, description="Document name, passed to the worker")
    force_rebuild: bool = Field(False, description="Take over locks held by a running job")


class StartIndexingResponse(BaseModel):
    status: str
    job_id: str
    message: str


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool


class SearchAllRequest(BaseModel):
    query: str = Field(..., min_length=1)
    k: int = Field(5, ge=1, le=100)
    min_score: float = Field(0.5, description="Drop results scoring below this")


class SearchResponse(BaseModel):
    query: str
    total_results: int
    results: List[SearchResult]
    file_id: Optional[str] = None


@router.post("/start", response_model=StartIndexingResponse)
async def start_indexing(request: StartIndexingRequest):
    """Start building the vector index for a document"""
    try:
        job_id = await orchestrator.start_indexing(
            request.file_id,
            request.file_name,
            force_rebuild=request.force_rebuild,
        )
        return StartIndexingResponse(
            status="accepted",
            job_id=job_id,
            message=f"Indexing started for {request.file_name}",
        )
    except LockConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/status/{job_id}", response_model=IndexJob)
async def get_job_status(job_id: str):
    try:
        return await orchestrator.get_job(job_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/list", response_model=List[IndexJob])
async def list_jobs():
    return await orchestrator.list_jobs()


@router.post("/cancel/{job_id}", response_model=CancelResponse)
async def cancel_job(job_id: str):
    """Cancel a running job; returns cancelled=false if it is unknown or already finished"""
    cancelled = await orchestrator.cancel_job(job_id)
    return CancelResponse(job_id=job_id, cancelled=cancelled)


@router.post("/search", response_model=SearchResponse)
async def search(request: SearchRequest):
    try:
        results = await orchestrator.search_vector(
            request.file_id,
            request.query,
            k=request.k,
            min_score=request.min_score,
        )
        return SearchResponse(
            query=request.query,
            file_id=request.file_id,
            total_results=len(results),
            results=results,
        )
    except IndexLoadError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/search-all", response_model=SearchResponse)
async def search_all(request: SearchAllRequest):
    """Search across every indexed document"""
    try:
        results = await orchestrator.search_all_manuals(
            request.query,
            k=request.k,
            min_score=request.min_score,
        )
        return SearchResponse(
            query=request.query,
            total_results=len(results),
            results=results,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/health")
async def health():
    locks = orchestrator.locks
    global_lock = locks.get_lock("*")
    return {
        "status": "healthy",
        "worker_configured": orchestrator.worker.enabled,
        "index_type": orchestrator.index_type,
        "dimensions": orchestrator.dimensions,
        "global_lock": global_lock.job_id if global_lock else None,
        "file_locks": [
            {"file_id": lock.resource_key, "job_id": lock.job_id}
            for lock in locks.get_all_locks()
        ],
    }
