import re
import math
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import openai
from openai import AsyncOpenAI

from ..core.errors import FatalInferenceError, TransientInferenceError

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 8000
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class EmbeddingResult:
    embeddings: List[List[float]] = field(default_factory=list)
    model: str = ""
    dimensions: int = 0
    total_tokens: int = 0


class BaseEmbeddingProvider(ABC):
    """Abstract base class for embedding providers"""

    def __init__(self, model_name: str, dimensions: int):
        self.model_name = model_name
        self.dimensions = dimensions
        logger.info(f"Initialized {self.__class__.__name__} with model: {model_name}")

    @abstractmethod
    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingResult:
        """
        Generate embeddings for a batch of texts

        Args:
            texts: Texts to embed

        Returns:
            EmbeddingResult with one vector per input text
        """

    async def embed_text(self, text: str) -> List[float]:
        """Generate the embedding of a single text"""
        result = await self.embed_batch([text])
        return result.embeddings[0]

    def get_dimension(self) -> int:
        return self.dimensions


class OpenAIEmbeddingClient(BaseEmbeddingProvider):
    """OpenAI embedding provider with retries for rate limits and network errors"""

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        dimensions: int = 1536,
        api_key: Optional[str] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        super().__init__(model_name, dimensions)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # Lazy so the service can start without an API key
        if self._client is None:
            if not self._api_key:
                raise FatalInferenceError("OpenAI API key not configured")
            # Retries are handled here, not by the SDK
            self._client = AsyncOpenAI(api_key=self._api_key, max_retries=0)
        return self._client

    @staticmethod
    def clean_text(text: str) -> str:
        """Collapse whitespace and newlines and cap the length."""
        return _WHITESPACE_RE.sub(" ", text).strip()[:MAX_TEXT_LENGTH]

    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingResult:
        if not texts:
            return EmbeddingResult(model=self.model_name, dimensions=self.dimensions)

        cleaned = [self.clean_text(t) for t in texts]
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                logger.info(
                    f"Embedding batch of {len(cleaned)} texts (attempt {attempt + 1}/{self.max_retries})"
                )
                response = await self.client.embeddings.create(
                    model=self.model_name,
                    input=cleaned,
                    dimensions=self.dimensions,
                )
            except openai.RateLimitError as e:
                last_error = TransientInferenceError(str(e))
                if attempt < self.max_retries - 1:
                    wait = self.retry_delay * (2 ** attempt)
                    logger.warning(f"Rate limited, waiting {wait:.1f}s before retry")
                    await asyncio.sleep(wait)
                continue
            except openai.APIConnectionError as e:
                # Includes APITimeoutError
                last_error = TransientInferenceError(str(e))
                if attempt < self.max_retries - 1:
                    logger.warning(f"Network error from embedding API, retrying in {self.retry_delay:.1f}s: {e}")
                    await asyncio.sleep(self.retry_delay)
                continue
            except FatalInferenceError:
                raise
            except Exception as e:
                logger.error(f"Error generating OpenAI embeddings: {e}")
                raise FatalInferenceError(f"OpenAI API error: {e}") from e

            embeddings = [item.embedding for item in response.data]
            total_tokens = response.usage.total_tokens if response.usage else 0
            logger.info(f"Embedded {len(embeddings)} texts using {total_tokens} tokens")
            return EmbeddingResult(
                embeddings=embeddings,
                model=self.model_name,
                dimensions=self.dimensions,
                total_tokens=total_tokens,
            )

        raise FatalInferenceError(
            f"Failed to generate embeddings after {self.max_retries} attempts: {last_error}"
        ) from last_error

    async def validate_api_key(self) -> bool:
        try:
            await self.embed_text("test")
            return True
        except FatalInferenceError as e:
            logger.error(f"OpenAI API key validation failed: {e}")
            return False


def estimate_tokens(text: str) -> int:
    """Rough token estimate (about 4 characters per token)."""
    return math.ceil(len(text) / 4)


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    a = np.asarray(vec_a, dtype=np.float64)
    b = np.asarray(vec_b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError("Vectors must have the same dimensions")

    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)
