"""
Tools executed by remote workers over a persistent socket.

A worker connects, sends ``register_tools`` and then answers ``call_tool``
frames with ``tool_result`` frames. Every call waits on a pending entry keyed
by a random correlation id; the entry is removed by whichever comes first,
the matching result or the timeout.
"""

from typing import Dict, List, Any, Optional, Callable, Awaitable
from dataclasses import dataclass, field
from enum import Enum
import asyncio
import secrets
import time

import structlog

from gateway.domain.errors import RemoteToolError, ToolTimeoutError
from gateway.domain.models.tool import ToolContext, ToolDefinition
from gateway.domain.tool.tool_registry import ToolRegistry, ToolHandler
from gateway.domain.tool.tool_validator import ToolParameterValidator, ToolDeclarationError

logger = structlog.get_logger(__name__)

SendMessage = Callable[[Dict[str, Any]], Awaitable[None]]

DEFAULT_REMOTE_TOOL_TIMEOUT = 30.0


class PeerState(str, Enum):
    CONNECTING = "connecting"
    REGISTERED = "registered"
    CLOSED = "closed"


@dataclass
class RemotePeer:
    peer_id: str
    hostname: str
    send: SendMessage
    state: PeerState = PeerState.CONNECTING
    tool_names: List[str] = field(default_factory=list)
    connected_at: float = field(default_factory=time.time)


@dataclass
class PendingRemoteCall:
    call_id: str
    peer_id: str
    tool_name: str
    future: "asyncio.Future[Any]"
    created_at: float
    timer: Optional[asyncio.TimerHandle] = None


class RemoteToolBridge:
    """Proxies tool handlers to remote peers and correlates their results"""

    def __init__(self, registry: ToolRegistry, timeout: float = DEFAULT_REMOTE_TOOL_TIMEOUT):
        self.registry = registry
        self.timeout = timeout
        self.peers: Dict[str, RemotePeer] = {}
        self.pending: Dict[str, PendingRemoteCall] = {}

    def open_peer(self, peer_id: str, hostname: str, send: SendMessage) -> RemotePeer:
        peer = RemotePeer(peer_id=peer_id, hostname=hostname, send=send)
        self.peers[peer_id] = peer
        logger.info("Remote peer connected", peer_id=peer_id, hostname=hostname)
        return peer

    def register_tools(self, peer_id: str, declarations: List[Dict[str, Any]]) -> List[str]:
        """Register a peer's tools; invalid declarations are skipped"""

        peer = self.peers.get(peer_id)
        if peer is None or peer.state == PeerState.CLOSED:
            logger.warning("Ignoring tool registration from unknown or closed peer", peer_id=peer_id)
            return []

        registered = []
        for raw in declarations:
            try:
                definition = ToolParameterValidator.validate_declaration(raw)
            except ToolDeclarationError as e:
                logger.warning("Rejected remote tool declaration", peer_id=peer_id, error=str(e))
                continue

            self.registry.register_tool(
                definition,
                self._make_handler(peer, definition),
                source=f"remote:{peer_id}"
            )
            if definition.name not in peer.tool_names:
                peer.tool_names.append(definition.name)
            registered.append(definition.name)

        peer.state = PeerState.REGISTERED
        logger.info("Registered remote tools", peer_id=peer_id, hostname=peer.hostname, tools=registered)
        return registered

    def close_peer(self, peer_id: str):
        """Unregister everything the peer provided and fail its in-flight calls"""

        peer = self.peers.pop(peer_id, None)
        if peer is None:
            return

        peer.state = PeerState.CLOSED
        for name in peer.tool_names:
            tool = self.registry.get_tool_info(name)
            # Another peer may have re-registered the same name since
            if tool is not None and tool.source == f"remote:{peer_id}":
                self.registry.unregister_tool(name)

        for call_id in [c.call_id for c in self.pending.values() if c.peer_id == peer_id]:
            self._settle(call_id, error=RemoteToolError(f"Remote peer {peer.hostname} disconnected"))

        logger.info("Remote peer disconnected", peer_id=peer_id, hostname=peer.hostname,
                    unregistered=peer.tool_names)

    def resolve_result(self, call_id: str, result: Any = None, error: Optional[str] = None) -> bool:
        """Settle a pending call from a ``tool_result`` frame; unknown ids are ignored"""

        if error:
            return self._settle(call_id, error=RemoteToolError(str(error)))
        return self._settle(call_id, result=result)

    async def handle_message(self, peer_id: str, message: Dict[str, Any]) -> bool:
        """Handle a worker protocol frame; returns False for frames of other kinds"""

        message_type = message.get("type")
        if message_type == "register_tools":
            self.register_tools(peer_id, message.get("tools") or [])
            return True
        if message_type == "tool_result":
            self.resolve_result(message.get("id"), message.get("result"), message.get("error"))
            return True
        return False

    async def call_remote(self, peer: RemotePeer, name: str, args: Dict[str, Any]) -> Any:
        if peer.state == PeerState.CLOSED:
            raise RemoteToolError(f"Remote peer {peer.hostname} disconnected")

        loop = asyncio.get_running_loop()
        call_id = self._new_call_id()
        pending = PendingRemoteCall(
            call_id=call_id,
            peer_id=peer.peer_id,
            tool_name=name,
            future=loop.create_future(),
            created_at=time.time()
        )
        self.pending[call_id] = pending
        pending.timer = loop.call_later(self.timeout, self._expire, call_id)

        try:
            await peer.send({"type": "call_tool", "id": call_id, "name": name, "args": args})
        except Exception as e:
            self._settle(call_id, error=RemoteToolError(f"Failed to send tool call: {e}"))

        return await pending.future

    def _make_handler(self, peer: RemotePeer, definition: ToolDefinition) -> ToolHandler:
        async def handler(args: Dict[str, Any], context: ToolContext) -> Any:
            return await self.call_remote(peer, definition.name, args)

        return handler

    def _expire(self, call_id: str):
        pending = self.pending.get(call_id)
        if pending is None:
            return
        logger.warning("Remote tool call timed out", call_id=call_id, tool=pending.tool_name,
                       peer_id=pending.peer_id)
        self._settle(call_id, error=ToolTimeoutError(pending.tool_name, self.timeout))

    def _settle(self, call_id: str, result: Any = None, error: Optional[Exception] = None) -> bool:
        pending = self.pending.pop(call_id, None)
        if pending is None:
            logger.debug("No pending call for tool result", call_id=call_id)
            return False

        if pending.timer is not None:
            pending.timer.cancel()

        if not pending.future.done():
            if error is not None:
                pending.future.set_exception(error)
            else:
                pending.future.set_result(result)
        return True

    def _new_call_id(self) -> str:
        call_id = secrets.token_hex(4)
        while call_id in self.pending:
            call_id = secrets.token_hex(4)
        return call_id
