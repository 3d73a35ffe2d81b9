"""
Embedding Service for generating vector representations.

Uses OpenAI's embedding models. Large inputs are split into sequential
sub-batches and every response is reassembled by index, so the output
order always matches the input order.
"""

import logging
from abc import ABC, abstractmethod

import openai
from openai import AsyncOpenAI

from ..config import EMBEDDING_MODELS
from ..errors import ConfigurationError, ProviderError, ValidationError

logger = logging.getLogger("vy_memory.memory.embeddings")


class EmbeddingService(ABC):
    """Abstract interface for embedding generation."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the dimension of embeddings produced."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the embedding model identifier."""
        pass

    @property
    @abstractmethod
    def max_tokens(self) -> int:
        """Return the aggregate token limit for one request."""
        pass

    @property
    @abstractmethod
    def batch_size(self) -> int:
        """Return the maximum number of texts per request."""
        pass

    @abstractmethod
    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        pass

    async def generate_embedding(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Raises:
            ValidationError: If text is empty or whitespace.
            ProviderError: If the provider returned no embedding.
        """
        if not text or not text.strip():
            raise ValidationError("Cannot generate embedding for empty text")

        embeddings = await self.generate_embeddings([text])
        if not embeddings:
            raise ProviderError(
                "Failed to generate embedding - no result returned",
                kind="incomplete_response",
            )
        return embeddings[0]

    def estimate_tokens(self, text: str) -> int:
        """
        Rough token estimate (~4 characters per token for English).

        This is an approximation, not a tokenizer count.
        """
        return -(-len(text) // 4)

    def can_process_batch(self, texts: list[str]) -> bool:
        """Check whether texts fit in one request by token and item limits."""
        total_tokens = sum(self.estimate_tokens(text) for text in texts)
        return total_tokens <= self.max_tokens and len(texts) <= self.batch_size


class OpenAIEmbeddingService(EmbeddingService):
    """
    OpenAI embedding service using text-embedding-3 models.

    Supports native dimension reduction via the dimensions parameter.

    Models:
    - text-embedding-3-small: default 1536 dimensions
    - text-embedding-3-large: default 3072 dimensions (can be reduced)
    - text-embedding-ada-002: 1536 dimensions, no reduction
    """

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        max_tokens: int | None = None,
        batch_size: int | None = None,
    ):
        """
        Initialize OpenAI embedding service.

        Args:
            api_key: OpenAI API key
            model: Embedding model name
            dimensions: Override output dimensions. If None, uses model's default.
            max_tokens: Aggregate token limit per request (model default if None)
            batch_size: Maximum texts per request (model default if None)
        """
        self.api_key = api_key
        self.model = model
        self._client: AsyncOpenAI | None = None

        limits = EMBEDDING_MODELS.get(model, EMBEDDING_MODELS["text-embedding-3-small"])
        self._max_tokens = max_tokens or limits["max_tokens"]
        self._batch_size = batch_size or limits["batch_size"]

        # Determine dimensions
        default_dim = limits["dimensions"]
        if dimensions is not None:
            if dimensions > default_dim:
                logger.warning(
                    f"Requested dimensions ({dimensions}) exceeds model default ({default_dim}). "
                    f"Using {default_dim}."
                )
                self._dimension = default_dim
                self._requested_dimensions = None
            else:
                self._dimension = dimensions
                self._requested_dimensions = dimensions
        else:
            self._dimension = default_dim
            self._requested_dimensions = None

        logger.info(
            f"OpenAIEmbeddingService initialized: model={model}, dimensions={self._dimension}, "
            f"batch_size={self._batch_size}"
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self.model

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def _get_client(self) -> AsyncOpenAI:
        """Get or create the async OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts.

        Empty entries are dropped, so the result lines up with the non-empty
        inputs in their original order.

        Raises:
            ValidationError: If every input is empty.
            ProviderError: On any provider failure or incomplete response.
        """
        if not texts:
            return []

        non_empty = [text for text in texts if text and text.strip()]
        if not non_empty:
            raise ValidationError("Cannot generate embeddings for all empty texts")

        if len(non_empty) <= self._batch_size:
            return await self._call_embeddings(non_empty)

        # Sequential sub-batches, concatenated in order
        results: list[list[float]] = []
        for start in range(0, len(non_empty), self._batch_size):
            batch = non_empty[start:start + self._batch_size]
            logger.debug(f"Embedding sub-batch {start // self._batch_size + 1} ({len(batch)} texts)")
            results.extend(await self._call_embeddings(batch))
        return results

    async def _call_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Call the OpenAI embeddings endpoint for one batch."""
        client = self._get_client()

        kwargs = {
            "model": self.model,
            "input": texts,
            "encoding_format": "float",
        }
        if self._requested_dimensions is not None:
            kwargs["dimensions"] = self._requested_dimensions

        try:
            response = await client.embeddings.create(**kwargs)
        except openai.AuthenticationError as e:
            raise ProviderError(f"OpenAI authentication failed: {e}", kind="authentication") from e
        except openai.RateLimitError as e:
            raise ProviderError(f"OpenAI rate limit exceeded: {e}", kind="rate_limit") from e
        except openai.APIConnectionError as e:
            raise ProviderError(f"Could not reach OpenAI: {e}", kind="network") from e
        except openai.APIError as e:
            raise ProviderError(f"OpenAI API error: {e}", kind="unknown") from e

        data = getattr(response, "data", None)
        if not data:
            raise ProviderError("OpenAI returned no embedding data", kind="malformed_response")

        # Reassemble by index to guard against provider reordering
        embeddings: list[list[float] | None] = [None] * len(texts)
        for item in data:
            index = getattr(item, "index", None)
            vector = getattr(item, "embedding", None)
            if not isinstance(index, int) or vector is None or not 0 <= index < len(texts):
                raise ProviderError(
                    f"OpenAI returned a malformed embedding item (index={index})",
                    kind="malformed_response",
                )
            if len(vector) != self._dimension:
                raise ProviderError(
                    f"Embedding at index {index} has {len(vector)} dimensions, "
                    f"expected {self._dimension}",
                    kind="malformed_response",
                )
            embeddings[index] = list(vector)

        missing = [i for i, vector in enumerate(embeddings) if vector is None]
        if missing:
            raise ProviderError(
                f"Missing embedding for text at index {missing[0]}",
                kind="incomplete_response",
                details={"missing_indices": missing},
            )

        return embeddings


def create_embedding_service(
    api_key: str = "",
    model: str = "",
    dimensions: int | None = None,
    max_tokens: int | None = None,
    batch_size: int | None = None,
) -> EmbeddingService:
    """
    Factory function to create the embedding service.

    Args:
        api_key: OpenAI API key (required)
        model: Model name (optional, uses default)
        dimensions: Override output dimensions
        max_tokens: Aggregate token limit per request
        batch_size: Maximum texts per request

    Returns:
        Configured EmbeddingService instance
    """
    if not api_key:
        raise ConfigurationError("OpenAI API key required for embeddings (VY_OPENAI_API_KEY)")
    model = model or "text-embedding-3-small"
    if model not in EMBEDDING_MODELS:
        raise ConfigurationError(
            f"Unsupported embedding model: {model}",
            {"model": model, "supported_models": list(EMBEDDING_MODELS)},
        )
    return OpenAIEmbeddingService(
        api_key=api_key,
        model=model,
        dimensions=dimensions,
        max_tokens=max_tokens,
        batch_size=batch_size,
    )
