"""
Nearest-neighbor indexes over document embeddings.

Two interchangeable strategies share one contract: `FlatIPIndex` (exact
inner-product brute force) and `HNSWIndex` (approximate, graph based).
Scores are inner products, higher is more similar. Vectors are expected
to be normalized so the score equals cosine similarity.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import faiss
import numpy as np

from ..core.errors import DimensionMismatch, IndexLoadError

logger = logging.getLogger(__name__)


@dataclass
class SearchHits:
    ids: List[int] = field(default_factory=list)
    scores: List[float] = field(default_factory=list)


class BaseVectorIndex(ABC):
    """Common contract for nearest-neighbor index strategies"""

    def __init__(self, dimensions: int):
        self.dimensions = dimensions
        self.index: Optional[faiss.Index] = None
        self.index_path: Optional[str] = None

    @abstractmethod
    def _create(self) -> faiss.Index:
        """Build an empty faiss index for this strategy"""

    def _configure(self, index: faiss.Index):
        """Apply search-time parameters after creating or loading"""

    @property
    def vector_count(self) -> int:
        return int(self.index.ntotal) if self.index is not None else 0

    def initialize(self):
        if self.index is not None:
            raise RuntimeError("Index already initialized")
        self.index = self._create()
        self._configure(self.index)

    def _as_matrix(self, vectors: Sequence[Sequence[float]]) -> np.ndarray:
        matrix = np.asarray(vectors, dtype=np.float32)
        if matrix.ndim == 1:
            matrix = matrix.reshape(1, -1)
        if matrix.ndim != 2 or matrix.shape[1] != self.dimensions:
            got = matrix.shape[-1] if matrix.ndim else 0
            raise DimensionMismatch(
                f"Vector dimension mismatch: expected {self.dimensions}, got {got}"
            )
        return np.ascontiguousarray(matrix)

    def add_vectors(self, vectors: Sequence[Sequence[float]]):
        """Append vectors; their ids are their insertion positions"""
        if self.index is None:
            self.initialize()
        matrix = self._as_matrix(vectors)
        self.index.add(matrix)
        logger.info(f"Added {len(matrix)} vectors. Total count: {self.vector_count}")

    def save(self, path: str):
        if self.index is None:
            raise RuntimeError("Index not initialized")
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        faiss.write_index(self.index, str(path))
        self.index_path = str(path)
        logger.info(f"Index saved to {path} ({self.vector_count} vectors)")

    def load(self, path: str):
        """
        Load a serialized index from disk

        Raises:
            IndexLoadError: If the file is missing, unreadable, or of another dimensionality
        """
        if not Path(path).exists():
            raise IndexLoadError(f"Index file not found: {path}")

        try:
            index = faiss.read_index(str(path))
        except RuntimeError as e:
            raise IndexLoadError(f"Failed to read index {path}: {e}") from e

        if index.d != self.dimensions:
            raise IndexLoadError(
                f"Index {path} has {index.d} dimensions, expected {self.dimensions}"
            )

        self._configure(index)
        self.index = index
        self.index_path = str(path)
        logger.info(f"Index loaded from {path} ({self.vector_count} vectors, {self.dimensions} dimensions)")

    def search(self, query_vector: Sequence[float], k: int = 5) -> SearchHits:
        """
        Find the k nearest vectors

        Args:
            query_vector: Query embedding
            k: Number of neighbors; clamped to the number of stored vectors

        Returns:
            SearchHits with ids and scores, best first
        """
        if self.index is None:
            raise RuntimeError("Index not initialized")

        query = self._as_matrix(query_vector)
        if query.shape[0] != 1:
            raise DimensionMismatch("Expected a single query vector")

        actual_k = min(k, self.vector_count)
        if actual_k <= 0:
            return SearchHits()

        scores, ids = self.index.search(query, actual_k)
        hits = SearchHits()
        for vector_id, score in zip(ids[0], scores[0]):
            # faiss pads with -1 when it finds fewer than k neighbors
            if vector_id < 0:
                continue
            hits.ids.append(int(vector_id))
            hits.scores.append(float(score))
        return hits

    def get_stats(self) -> Dict[str, Any]:
        return {
            "type": self.__class__.__name__,
            "dimensions": self.dimensions,
            "current_count": self.vector_count,
            "index_path": self.index_path,
            "is_initialized": self.index is not None,
        }

    def clear(self):
        self.index = None
        self.index_path = None


class FlatIPIndex(BaseVectorIndex):
    """Exact inner-product search"""

    def _create(self) -> faiss.Index:
        return faiss.IndexFlatIP(self.dimensions)


class HNSWIndex(BaseVectorIndex):
    """Approximate graph-based search (HNSW) with inner-product scores"""

    def __init__(self, dimensions: int, m: int = 16, ef_construction: int = 200, ef_search: int = 50):
        super().__init__(dimensions)
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search

    def _create(self) -> faiss.Index:
        index = faiss.IndexHNSWFlat(self.dimensions, self.m, faiss.METRIC_INNER_PRODUCT)
        index.hnsw.efConstruction = self.ef_construction
        return index

    def _configure(self, index: faiss.Index):
        hnsw = getattr(index, "hnsw", None)
        if hnsw is not None:
            hnsw.efSearch = self.ef_search

    def set_ef_search(self, ef: int):
        self.ef_search = ef
        if self.index is not None:
            self._configure(self.index)
        logger.info(f"Set efSearch to {ef}")

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update({
            "m": self.m,
            "ef_construction": self.ef_construction,
            "ef_search": self.ef_search,
        })
        return stats


def create_vector_index(
    index_type: str,
    dimensions: int,
    m: int = 16,
    ef_construction: int = 200,
    ef_search: int = 50,
) -> BaseVectorIndex:
    """
    Factory function to create a nearest-neighbor index

    Args:
        index_type: "flat" or "hnsw"
        dimensions: Vector dimensionality

    Returns:
        Index strategy instance (empty until loaded or filled)
    """
    index_type = index_type.lower()

    if index_type == "flat":
        return FlatIPIndex(dimensions)
    elif index_type == "hnsw":
        return HNSWIndex(dimensions, m=m, ef_construction=ef_construction, ef_search=ef_search)
    else:
        raise ValueError(f"Unknown index type: {index_type}. Supported: flat, hnsw")
