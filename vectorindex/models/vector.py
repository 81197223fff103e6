from typing import Any, Dict, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from .job import utcnow


class VectorMetadata(BaseModel):
    """Metadata for one vector; stored in a list where the position equals vector_id."""

    chunk_id: str
    file_id: str
    vector_id: int
    content: str = ""
    start_offset: int = 0
    end_offset: int = 0
    chunk_order: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_raw(cls, raw: Dict[str, Any], vector_id: int, file_id: Optional[str] = None) -> "VectorMetadata":
        """
        Build metadata from an entry of the worker's metadata file.

        The worker writes `{fileId, chunkIndex, text, startWord, endWord}` per vector.
        """
        owner = raw.get("fileId") or file_id or ""
        chunk_index = raw.get("chunkIndex") or 0
        return cls(
            chunk_id=raw.get("chunkId") or f"{owner}-chunk-{chunk_index}",
            file_id=owner,
            vector_id=vector_id,
            content=raw.get("text") or raw.get("content") or "",
            start_offset=raw.get("startWord") or 0,
            end_offset=raw.get("endWord") or 0,
            chunk_order=chunk_index,
        )


class SearchResult(BaseModel):
    chunk_id: str
    file_id: str
    content: str
    score: float
    metadata: VectorMetadata


class SearchRequest(BaseModel):
    file_id: str = Field(..., description="Document whose index is searched")
    query: str = Field(..., min_length=1, description="Search query text")
    k: int = Field(5, description="Number of results", ge=1, le=100)
    min_score: float = Field(0.0, description="Minimum similarity score")
