import pytest

from vectorindex.core.errors import DimensionMismatch, IndexLoadError
from vectorindex.services.ann_index import FlatIPIndex, HNSWIndex, create_vector_index

from conftest import DIMENSIONS, unit

VECTORS = [
    unit([1.0, 0.0, 0.0, 0.0]),
    unit([0.0, 1.0, 0.0, 0.0]),
    unit([0.7, 0.7, 0.0, 0.0]),
    unit([0.0, 0.0, 1.0, 0.0]),
]


@pytest.fixture(params=["flat", "hnsw"])
def index(request):
    return create_vector_index(request.param, DIMENSIONS, m=8, ef_construction=40, ef_search=16)


class TestVectorIndex:

    def test_factory(self):
        assert isinstance(create_vector_index("flat", DIMENSIONS), FlatIPIndex)
        assert isinstance(create_vector_index("HNSW", DIMENSIONS), HNSWIndex)
        with pytest.raises(ValueError):
            create_vector_index("ivf", DIMENSIONS)

    def test_search_ranks_by_inner_product(self, index):
        index.add_vectors(VECTORS)

        hits = index.search(unit([1.0, 0.1, 0.0, 0.0]), k=2)

        assert hits.ids == [0, 2]
        assert hits.scores[0] >= hits.scores[1]

    def test_k_is_clamped_to_vector_count(self, index):
        index.add_vectors(VECTORS[:2])

        hits = index.search(unit([1.0, 0.0, 0.0, 0.0]), k=10)

        assert len(hits.ids) == 2

    def test_empty_index_returns_nothing(self, index):
        index.initialize()
        hits = index.search(unit([1.0, 0.0, 0.0, 0.0]), k=3)
        assert hits.ids == []

    def test_query_dimension_mismatch(self, index):
        index.add_vectors(VECTORS)
        with pytest.raises(DimensionMismatch):
            index.search([1.0, 0.0], k=1)

    def test_save_and_load(self, index, tmp_path):
        index.add_vectors(VECTORS)
        path = tmp_path / "idx" / "doc.index"
        index.save(str(path))

        loaded = create_vector_index("flat", DIMENSIONS)
        loaded.load(str(path))

        assert loaded.vector_count == 4
        assert loaded.search(unit([0.0, 0.0, 1.0, 0.0]), k=1).ids == [3]
        assert loaded.get_stats()["index_path"] == str(path)

    def test_load_missing_file(self, tmp_path):
        index = FlatIPIndex(DIMENSIONS)
        with pytest.raises(IndexLoadError):
            index.load(str(tmp_path / "missing.index"))

    def test_load_corrupt_file(self, tmp_path):
        path = tmp_path / "corrupt.index"
        path.write_bytes(b"not a faiss index")

        with pytest.raises(IndexLoadError):
            FlatIPIndex(DIMENSIONS).load(str(path))

    def test_load_wrong_dimensions(self, tmp_path):
        index = FlatIPIndex(DIMENSIONS)
        index.add_vectors(VECTORS)
        path = tmp_path / "doc.index"
        index.save(str(path))

        with pytest.raises(IndexLoadError, match="dimensions"):
            FlatIPIndex(8).load(str(path))

    def test_clear(self, index):
        index.add_vectors(VECTORS)
        index.clear()

        assert index.vector_count == 0
        assert index.get_stats()["is_initialized"] is False


class TestHNSWIndex:

    def test_set_ef_search(self):
        index = HNSWIndex(DIMENSIONS, m=8, ef_construction=40, ef_search=16)
        index.add_vectors(VECTORS)

        index.set_ef_search(64)

        assert index.index.hnsw.efSearch == 64
        assert index.get_stats()["ef_search"] == 64

    def test_load_applies_ef_search(self, tmp_path):
        builder = HNSWIndex(DIMENSIONS, m=8, ef_construction=40)
        builder.add_vectors(VECTORS)
        path = tmp_path / "graph.index"
        builder.save(str(path))

        loaded = HNSWIndex(DIMENSIONS, ef_search=32)
        loaded.load(str(path))

        assert loaded.index.hnsw.efSearch == 32
