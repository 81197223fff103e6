import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import faiss
import numpy as np
import pytest

# Add project root to Python path to allow importing 'vectorindex'
sys.path.append(str(Path(__file__).parent.parent))

from vectorindex.services.checkpoint_manager import CheckpointManager
from vectorindex.services.file_registry import FileRegistry
from vectorindex.services.job_store import BlobJobStore
from vectorindex.services.lock_manager import LockManager
from vectorindex.services.orchestrator import JobOrchestrator
from vectorindex.services.storage import BlobStorage

DIMENSIONS = 4


def unit(vector):
    arr = np.asarray(vector, dtype=np.float32)
    return (arr / np.linalg.norm(arr)).tolist()


def write_index_artifacts(storage_root: Path, file_id: str, vectors, texts=None):
    """Write a flat faiss index and its metadata list the way the indexing worker does"""
    index_dir = storage_root / "vector-indexes"
    index_dir.mkdir(parents=True, exist_ok=True)

    index = faiss.IndexFlatIP(DIMENSIONS)
    index.add(np.asarray([unit(v) for v in vectors], dtype=np.float32))
    faiss.write_index(index, str(index_dir / f"{file_id}.index"))

    texts = texts or [f"chunk {i} of {file_id}" for i in range(len(vectors))]
    metadata = [
        {"fileId": file_id, "chunkIndex": i, "text": text, "startWord": i * 10, "endWord": i * 10 + 9}
        for i, text in enumerate(texts)
    ]
    (index_dir / f"{file_id}.metadata.json").write_text(json.dumps(metadata))


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / "storage"
    root.mkdir()
    return root


@pytest.fixture
def storage(storage_root):
    return BlobStorage(storage_type="local", root_dir=str(storage_root))


@pytest.fixture
def registered_files(storage_root):
    """File registry holding two uploaded documents"""
    files = [
        {"id": "f1", "filename": "doc.pdf", "s3Key": "uploads/f1/doc.pdf"},
        {"id": "f2", "filename": "manual.pdf", "s3Key": "uploads/f2/manual.pdf"},
    ]
    registry_path = storage_root / "metadata" / "files.json"
    registry_path.parent.mkdir(parents=True, exist_ok=True)
    registry_path.write_text(json.dumps(files))
    return files


@pytest.fixture
def mock_worker():
    worker = MagicMock()
    worker.enabled = True
    worker.trigger_indexing = AsyncMock(return_value=None)
    return worker


@pytest.fixture
def mock_embedder():
    embedder = MagicMock()
    embedder.model_name = "text-embedding-3-small"
    embedder.embed_text = AsyncMock(return_value=unit([1.0, 0.0, 0.0, 0.0]))
    return embedder


@pytest.fixture
def lock_manager():
    return LockManager()


@pytest.fixture
def orchestrator(tmp_path, storage, registered_files, mock_worker, mock_embedder, lock_manager):
    """Fresh orchestrator over local storage with a mocked worker and embedder"""
    return JobOrchestrator(
        storage=storage,
        job_store=BlobJobStore(storage),
        file_registry=FileRegistry(storage),
        worker=mock_worker,
        embedder=mock_embedder,
        lock_manager=lock_manager,
        checkpoint_manager=CheckpointManager(str(tmp_path / "checkpoints"), remote=storage),
        dimensions=DIMENSIONS,
        temp_dir=str(tmp_path / "temp"),
    )
