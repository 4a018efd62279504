"""
Error taxonomy for the gateway.

Transport and upstream errors abort a whole turn and are reported to the
caller. Tool, search and stream-parse errors are contained where they happen
and turned into degraded results.
"""

from enum import Enum
from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway errors"""


class TransportErrorKind(str, Enum):
    REFUSED = "refused"
    TIMEOUT = "timeout"
    UNRESOLVED_HOST = "unresolved_host"
    GENERIC = "generic"


class TransportError(GatewayError):
    """Could not talk to the completion endpoint at the network level"""

    def __init__(self, kind: TransportErrorKind, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.url = url


class UpstreamAPIError(GatewayError):
    """The completion endpoint answered with a non-2xx status"""

    def __init__(self, status_code: int, status_text: str):
        super().__init__(f"LLM API error: {status_code} {status_text}".strip())
        self.status_code = status_code
        self.status_text = status_text


class ProviderNotConfiguredError(GatewayError):
    def __init__(self, message: str = "No LLM provider configured. Please add a provider in settings."):
        super().__init__(message)


class ToolNotFoundError(GatewayError):
    def __init__(self, name: str):
        super().__init__(f"Tool {name} not found")
        self.name = name


class ToolTimeoutError(GatewayError):
    def __init__(self, name: str, timeout: float):
        super().__init__(f"Tool call {name} timed out after {timeout:g}s")
        self.name = name
        self.timeout = timeout


class RemoteToolError(GatewayError):
    """A remote peer answered a tool call with an error"""


class AccessDeniedError(GatewayError):
    def __init__(self, path: str):
        super().__init__(f"Access denied: {path}")
        self.path = path


class MemoryStoreCorruptionError(GatewayError):
    """The memory index database is unreadable or malformed"""


def describe_completion_error(error: BaseException) -> str:
    """Turn a completion failure into a message a user can act on"""

    if isinstance(error, TransportError):
        if error.kind == TransportErrorKind.REFUSED:
            return "Unable to connect to LLM provider. Please ensure the provider is running and accessible."
        if error.kind == TransportErrorKind.TIMEOUT:
            return "Connection to LLM provider timed out. Please check your network connection."
        if error.kind == TransportErrorKind.UNRESOLVED_HOST:
            return "Could not resolve hostname for LLM provider. Please check the endpoint configuration."
        return f"Error communicating with LLM provider: {error}"

    if isinstance(error, (UpstreamAPIError, ProviderNotConfiguredError)):
        return str(error)

    return f"Error communicating with LLM provider: {error}"
