from typing import List, Optional, Union

import httpx
import structlog

from gateway.domain.errors import UpstreamAPIError
from gateway.domain.streaming.completion_client import classify_transport_error, resolve_endpoint
from gateway.infrastructure.config.settings import ProviderConfig

logger = structlog.get_logger(__name__)


class EmbeddingProvider:
    """Creates embeddings through an OpenAI-compatible ``/embeddings`` endpoint"""

    def __init__(self, provider: ProviderConfig, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0):
        self.provider = provider
        self._http_client = http_client
        self.timeout = timeout

    @property
    def model(self) -> str:
        return self.provider.model

    async def embed(self, texts: Union[str, List[str]]) -> List[List[float]]:
        url, headers = resolve_endpoint(self.provider, "/embeddings")
        body = {"model": self.provider.model or "text-embedding-3-small", "input": texts}

        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.TransportError as e:
            raise classify_transport_error(e, url) from e

        if not response.is_success:
            raise UpstreamAPIError(response.status_code, response.reason_phrase)

        payload = response.json()
        return [item.get("embedding") or [] for item in payload.get("data") or []]

    async def embed_one(self, text: str) -> List[float]:
        vectors = await self.embed(text)
        return vectors[0] if vectors else []
