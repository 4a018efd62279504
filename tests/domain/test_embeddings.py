import json

import httpx
import pytest

from gateway.domain.context.memory.embeddings import EmbeddingProvider
from gateway.domain.errors import TransportError, TransportErrorKind, UpstreamAPIError
from gateway.infrastructure.config.settings import ProviderConfig

EMBEDDING_PROVIDER = ProviderConfig(base_url="http://llm.test/v1/", model="text-embedding-3-small", api_key="sk-test")


def make_provider(handler) -> EmbeddingProvider:
    return EmbeddingProvider(
        EMBEDDING_PROVIDER,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


class TestEmbeddingProvider:
    """OpenAI-compatible embeddings requests"""

    @pytest.mark.asyncio
    async def test_request_and_response(self):
        captured = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2]}, {"embedding": [0.3, 0.4]}]})

        vectors = await make_provider(handler).embed(["a", "b"])

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        request = captured[0]
        assert str(request.url) == "http://llm.test/v1/embeddings"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert json.loads(request.content) == {"model": "text-embedding-3-small", "input": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_embed_one_empty_response(self):
        provider = make_provider(lambda request: httpx.Response(200, json={"data": []}))
        assert await provider.embed_one("hello") == []

    @pytest.mark.asyncio
    async def test_upstream_error(self):
        provider = make_provider(lambda request: httpx.Response(429))
        with pytest.raises(UpstreamAPIError) as exc_info:
            await provider.embed_one("hello")
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("[Errno 111] Connection refused")

        with pytest.raises(TransportError) as exc_info:
            await make_provider(handler).embed_one("hello")
        assert exc_info.value.kind == TransportErrorKind.REFUSED
