"""
Client for OpenAI-compatible chat completion endpoints.

``stream_chat_completion`` opens one streamed POST and yields deltas parsed
from the server-sent-event body. Network failures are raised as classified
``TransportError``s and non-2xx answers as ``UpstreamAPIError``s; a single
malformed event is skipped.
"""

from typing import Dict, Any, Optional, List, AsyncIterator, Iterable, Tuple
import json
import re
import socket

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from gateway.domain.errors import TransportError, TransportErrorKind, UpstreamAPIError
from gateway.domain.models.conversation import ConversationMessage
from gateway.domain.models.tool import ToolDefinition
from gateway.infrastructure.config.settings import ProviderConfig
from gateway.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

DONE_SENTINEL = "[DONE]"
DEFAULT_CONNECT_TIMEOUT = 10.0

_VERSION_SUFFIX = re.compile(r"/v\d+[a-z0-9]*(/openai)?$")

_UNRESOLVED_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated with hostname",
)


class FunctionFragment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    arguments: Optional[str] = None


class ToolCallFragment(BaseModel):
    """Partial tool call carried by one streamed delta"""
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    id: Optional[str] = None
    type: Optional[str] = None
    function: Optional[FunctionFragment] = None


class CompletionDelta(BaseModel):
    """One increment of a streamed completion"""
    model_config = ConfigDict(extra="ignore")

    content: Optional[str] = None
    tool_calls: Optional[List[ToolCallFragment]] = None
    usage: Optional[Dict[str, Any]] = None


class CompletionResult(BaseModel):
    content: str = ""
    usage: Optional[Dict[str, Any]] = None


def resolve_endpoint(provider: ProviderConfig, path: str = "/chat/completions") -> Tuple[str, Dict[str, str]]:
    """Normalize the provider base URL and build request headers"""

    base_url = provider.base_url.rstrip("/")
    if not _VERSION_SUFFIX.search(base_url):
        base_url = f"{base_url}/v1"

    headers = {"Content-Type": "application/json"}
    if provider.api_key:
        headers["Authorization"] = f"Bearer {provider.api_key}"

    return f"{base_url}{path}", headers


def classify_transport_error(error: httpx.TransportError, url: Optional[str] = None) -> TransportError:
    """Map an httpx transport failure onto the gateway's error kinds"""

    if isinstance(error, httpx.TimeoutException):
        return TransportError(TransportErrorKind.TIMEOUT, f"Request timed out: {error}", url)

    if isinstance(error, httpx.ConnectError):
        cause: Optional[BaseException] = error
        while cause is not None:
            if isinstance(cause, socket.gaierror):
                return TransportError(TransportErrorKind.UNRESOLVED_HOST, f"Could not resolve host: {error}", url)
            cause = cause.__cause__ or cause.__context__

        text = str(error).lower()
        if any(marker in text for marker in _UNRESOLVED_MARKERS):
            return TransportError(TransportErrorKind.UNRESOLVED_HOST, f"Could not resolve host: {error}", url)
        return TransportError(TransportErrorKind.REFUSED, f"Connection failed: {error}", url)

    return TransportError(TransportErrorKind.GENERIC, f"Transport error: {error}", url)


class SSELineBuffer:
    """Splits a text stream into lines, keeping a trailing partial line for the next read"""

    def __init__(self):
        self._buffer = ""

    def feed(self, text: str) -> List[str]:
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        remainder, self._buffer = self._buffer, ""
        remainder = remainder.rstrip("\r")
        return [remainder] if remainder else []


def parse_event_data(line: str) -> Optional[str]:
    """Return the payload of a ``data:`` line, or None for any other line"""

    if not line.startswith("data:"):
        return None
    data = line[5:]
    if data.startswith(" "):
        data = data[1:]
    return data.strip()


def deltas_from_payload(payload: str) -> List[CompletionDelta]:
    """Decode one SSE event payload; a malformed event yields nothing"""

    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream event", payload=payload[:200])
        return []

    if not isinstance(event, dict):
        return []

    deltas = []
    choices = event.get("choices") or []
    if choices and isinstance(choices[0], dict) and choices[0].get("delta"):
        try:
            deltas.append(CompletionDelta.model_validate(choices[0]["delta"]))
        except ValidationError:
            logger.debug("Skipping invalid delta", payload=payload[:200])

    if event.get("usage"):
        deltas.append(CompletionDelta(usage=event["usage"]))

    return deltas


def build_request_body(
    model: str,
    messages: Iterable[ConversationMessage],
    tools: Optional[List[ToolDefinition]] = None,
    stream: bool = True
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "model": model,
        "messages": [message.to_payload() for message in messages],
        "stream": stream,
    }
    if stream:
        body["stream_options"] = {"include_usage": True}

    if tools:
        body["tools"] = [{"type": "function", "function": tool.to_declaration()} for tool in tools]
        body["tool_choice"] = "auto"

    return body


class CompletionClient:
    """Streaming and one-shot chat completions over httpx"""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = 300.0,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    ):
        self._http_client = http_client
        self._owns_client = http_client is None
        self.timeout = httpx.Timeout(timeout, connect=connect_timeout if timeout is None else min(connect_timeout, timeout))

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def aclose(self):
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def stream_chat_completion(
        self,
        provider: ProviderConfig,
        messages: List[ConversationMessage],
        tools: Optional[List[ToolDefinition]] = None
    ) -> AsyncIterator[CompletionDelta]:
        """Yield deltas until the stream ends or sends ``[DONE]``"""

        url, headers = resolve_endpoint(provider)
        body = build_request_body(provider.model, messages, tools)
        metrics.increment_counter("completion_requests")

        try:
            async with self.http_client.stream("POST", url, json=body, headers=headers, timeout=self.timeout) as response:
                if not response.is_success:
                    await response.aread()
                    raise UpstreamAPIError(response.status_code, response.reason_phrase)

                buffer = SSELineBuffer()
                async for text in response.aiter_text():
                    for line in buffer.feed(text):
                        data = parse_event_data(line)
                        if data is None:
                            continue
                        if data == DONE_SENTINEL:
                            return
                        for delta in deltas_from_payload(data):
                            yield delta

                for line in buffer.flush():
                    data = parse_event_data(line)
                    if data and data != DONE_SENTINEL:
                        for delta in deltas_from_payload(data):
                            yield delta
        except httpx.TransportError as e:
            metrics.increment_counter("completion_transport_errors")
            raise classify_transport_error(e, url) from e

    async def complete(self, provider: ProviderConfig, messages: List[ConversationMessage]) -> CompletionResult:
        """Non-streaming completion, used for short side tasks like summaries"""

        url, headers = resolve_endpoint(provider)
        body = build_request_body(provider.model, messages, stream=False)

        try:
            response = await self.http_client.post(url, json=body, headers=headers, timeout=self.timeout)
        except httpx.TransportError as e:
            raise classify_transport_error(e, url) from e

        if not response.is_success:
            raise UpstreamAPIError(response.status_code, response.reason_phrase)

        try:
            payload = response.json()
            message = (payload.get("choices") or [{}])[0].get("message") or {}
        except (ValueError, AttributeError) as e:
            raise UpstreamAPIError(response.status_code, f"Malformed response: {e}") from e

        return CompletionResult(content=message.get("content") or "", usage=payload.get("usage"))
