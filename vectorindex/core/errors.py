"""Exceptions raised by the indexing orchestrator and its collaborators."""


class VectorIndexError(Exception):
    """Base class for all orchestrator errors."""


class LockConflict(VectorIndexError):
    """The global or per-document lock is held by another job."""


class NotFound(VectorIndexError):
    """Unknown job or document."""


class TriggerFailure(VectorIndexError):
    """The external indexing worker could not be invoked."""


class JobTimeout(VectorIndexError):
    """No completion callback arrived within the job deadline."""


class IndexLoadError(VectorIndexError):
    """Index artifacts are missing or cannot be loaded."""


class DimensionMismatch(VectorIndexError):
    """A query vector does not match the dimensionality of the loaded index."""


class InferenceError(VectorIndexError):
    """Base class for embedding API failures."""


class TransientInferenceError(InferenceError):
    """Retryable embedding failure (rate limit, network)."""


class FatalInferenceError(InferenceError):
    """Non-retryable embedding failure, or retries exhausted."""
