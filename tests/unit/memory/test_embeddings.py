"""
Unit tests for vy_memory/memory/embeddings.py

Tests the OpenAI embedding service with a mocked AsyncOpenAI client.
"""

from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from vy_memory.errors import ConfigurationError, ProviderError, ValidationError
from tests.fixtures import make_embedding_response

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


def _status_error(cls, status: int):
    return cls("provider said no", response=httpx.Response(status, request=REQUEST), body=None)


class TestOpenAIEmbeddingService:
    """Tests for OpenAIEmbeddingService."""

    def test_init_defaults(self):
        """Test model defaults and lazy client."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        service = OpenAIEmbeddingService(api_key="test-key")

        assert service.model_name == "text-embedding-3-small"
        assert service.dimension == 1536
        assert service.batch_size == 100
        assert service.max_tokens == 8192
        assert service._client is None  # Lazy loaded

    def test_dimensions_capped_at_model_default(self):
        """Test that oversized dimension overrides fall back to the default."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        service = OpenAIEmbeddingService(api_key="test-key", dimensions=4096)

        assert service.dimension == 1536

    def test_get_client_reuses_client(self, mock_openai):
        """Test that _get_client creates the client once."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        service = OpenAIEmbeddingService(api_key="test-key")

        assert service._get_client() is service._get_client()
        mock_openai.assert_called_once_with(api_key="test-key")

    @pytest.mark.asyncio
    async def test_generate_embedding(self, mock_openai):
        """Test single-text embedding."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        service = OpenAIEmbeddingService(api_key="test-key", dimensions=8)

        vector = await service.generate_embedding("hello world")

        assert vector == [0.1] * 8
        kwargs = mock_openai.return_value.embeddings.create.call_args.kwargs
        assert kwargs["dimensions"] == 8
        assert kwargs["input"] == ["hello world"]

    @pytest.mark.asyncio
    async def test_generate_embedding_rejects_blank(self, mock_openai):
        """Test that blank text fails before any provider call."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        service = OpenAIEmbeddingService(api_key="test-key")

        with pytest.raises(ValidationError):
            await service.generate_embedding("  \n ")
        mock_openai.return_value.embeddings.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_entries_filtered(self, mock_openai):
        """Test that empty inputs are dropped before the call."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        service = OpenAIEmbeddingService(api_key="test-key", dimensions=4)

        vectors = await service.generate_embeddings(["a text", "", "   ", "another"])

        assert len(vectors) == 2
        assert mock_openai.return_value.embeddings.create.call_args.kwargs["input"] == ["a text", "another"]

    @pytest.mark.asyncio
    async def test_all_empty_rejected(self, mock_openai):
        """Test that all-empty input is a validation error."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        service = OpenAIEmbeddingService(api_key="test-key")

        with pytest.raises(ValidationError):
            await service.generate_embeddings(["", " "])

    @pytest.mark.asyncio
    async def test_sub_batches_keep_order(self, mock_openai):
        """Test that oversized input is split sequentially and concatenated in order."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        async def create(model, input, **kwargs):
            return make_embedding_response([[float(text.split()[-1])] * 2 for text in input])

        mock_openai.return_value.embeddings.create = AsyncMock(side_effect=create)
        service = OpenAIEmbeddingService(api_key="test-key", dimensions=2, batch_size=2)

        vectors = await service.generate_embeddings([f"text {i}" for i in range(5)])

        assert [v[0] for v in vectors] == [0.0, 1.0, 2.0, 3.0, 4.0]
        assert mock_openai.return_value.embeddings.create.call_count == 3

    @pytest.mark.asyncio
    async def test_reassembles_reordered_response(self, mock_openai):
        """Test that results are placed by index, not response order."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        mock_openai.return_value.embeddings.create = AsyncMock(
            return_value=make_embedding_response([[2.0, 2.0], [0.0, 0.0], [1.0, 1.0]], indices=[2, 0, 1])
        )
        service = OpenAIEmbeddingService(api_key="test-key", dimensions=2)

        vectors = await service.generate_embeddings(["a", "b", "c"])

        assert vectors == [[0.0, 0.0], [1.0, 1.0], [2.0, 2.0]]

    @pytest.mark.asyncio
    async def test_missing_index_is_incomplete(self, mock_openai):
        """Test that a missing index fails with an incomplete_response error."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        mock_openai.return_value.embeddings.create = AsyncMock(
            return_value=make_embedding_response([[0.0, 0.0], [2.0, 2.0]], indices=[0, 2])
        )
        service = OpenAIEmbeddingService(api_key="test-key", dimensions=2)

        with pytest.raises(ProviderError) as exc_info:
            await service.generate_embeddings(["a", "b", "c"])

        assert exc_info.value.kind == "incomplete_response"
        assert exc_info.value.details["missing_indices"] == [1]

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_malformed(self, mock_openai):
        """Test that vectors of the wrong size are rejected."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        mock_openai.return_value.embeddings.create = AsyncMock(
            return_value=make_embedding_response([[0.0, 0.0, 0.0]])
        )
        service = OpenAIEmbeddingService(api_key="test-key", dimensions=2)

        with pytest.raises(ProviderError) as exc_info:
            await service.generate_embeddings(["a"])

        assert exc_info.value.kind == "malformed_response"

    @pytest.mark.asyncio
    async def test_empty_data_is_malformed(self, mock_openai):
        """Test that a response without data is rejected."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        mock_openai.return_value.embeddings.create = AsyncMock(return_value=make_embedding_response([]))
        service = OpenAIEmbeddingService(api_key="test-key")

        with pytest.raises(ProviderError) as exc_info:
            await service.generate_embeddings(["a"])

        assert exc_info.value.kind == "malformed_response"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, kind",
        [
            (_status_error(openai.AuthenticationError, 401), "authentication"),
            (_status_error(openai.RateLimitError, 429), "rate_limit"),
            (_status_error(openai.InternalServerError, 500), "unknown"),
            (openai.APIConnectionError(request=REQUEST), "network"),
            (openai.APITimeoutError(request=REQUEST), "network"),
        ],
    )
    async def test_sdk_errors_are_classified(self, mock_openai, error, kind):
        """Test that SDK exceptions map to distinguishable error kinds."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        mock_openai.return_value.embeddings.create = AsyncMock(side_effect=error)
        service = OpenAIEmbeddingService(api_key="test-key")

        with pytest.raises(ProviderError) as exc_info:
            await service.generate_embedding("hello")

        assert exc_info.value.kind == kind


class TestTokenEstimates:
    """Tests for estimate_tokens and can_process_batch."""

    def test_estimate_tokens_rounds_up(self):
        """Test the ~4 characters per token approximation."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        service = OpenAIEmbeddingService(api_key="test-key")

        assert service.estimate_tokens("") == 0
        assert service.estimate_tokens("abcd") == 1
        assert service.estimate_tokens("abcde") == 2

    def test_can_process_batch(self):
        """Test the token and item count limits."""
        from vy_memory.memory.embeddings import OpenAIEmbeddingService

        service = OpenAIEmbeddingService(api_key="test-key", max_tokens=10, batch_size=3)

        assert service.can_process_batch(["abcd"] * 3) is True
        assert service.can_process_batch(["abcd"] * 4) is False
        assert service.can_process_batch(["a" * 44]) is False


class TestCreateEmbeddingService:
    """Tests for the factory."""

    def test_requires_api_key(self):
        from vy_memory.memory.embeddings import create_embedding_service

        with pytest.raises(ConfigurationError):
            create_embedding_service(api_key="")

    def test_rejects_unknown_model(self):
        from vy_memory.memory.embeddings import create_embedding_service

        with pytest.raises(ConfigurationError):
            create_embedding_service(api_key="k", model="text-embedding-9000")

    def test_builds_openai_service(self):
        from vy_memory.memory.embeddings import OpenAIEmbeddingService, create_embedding_service

        service = create_embedding_service(api_key="k", model="text-embedding-3-large", dimensions=256)

        assert isinstance(service, OpenAIEmbeddingService)
        assert service.dimension == 256
