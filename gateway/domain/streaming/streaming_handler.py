from typing import Dict, Any, Optional, Tuple
import time
import structlog

from gateway.application.websocket.connection_manager import ConnectionManager
from gateway.application.websocket.schema.events import DeltaEvent, DoneEvent, SummaryEvent
from gateway.domain.models.conversation import LoopResult

logger = structlog.get_logger(__name__)

StreamKey = Tuple[str, Optional[str]]


class StreamingHandler:
    """Streams one chat turn's output to a WebSocket client"""

    def __init__(self, connection_manager: ConnectionManager, flush_interval: float = 0.1, flush_chars: int = 50):
        self.connection_manager = connection_manager
        self.flush_interval = flush_interval
        self.flush_chars = flush_chars
        self.streaming_sessions: Dict[StreamKey, Dict[str, Any]] = {}

    async def stream_token(self, connection_id: str, token: str, session_id: Optional[str] = None):
        """Buffer a streamed token and send it once enough time or text has accumulated"""

        key = (connection_id, session_id)
        if key not in self.streaming_sessions:
            self.streaming_sessions[key] = {
                "buffer": "",
                "last_send": time.monotonic()
            }

        session_data = self.streaming_sessions[key]
        session_data["buffer"] += token

        now = time.monotonic()
        if now - session_data["last_send"] > self.flush_interval or len(session_data["buffer"]) > self.flush_chars:
            await self._send_delta(connection_id, session_data["buffer"], session_id)
            session_data["buffer"] = ""
            session_data["last_send"] = now

    async def flush_stream(self, connection_id: str, session_id: Optional[str] = None):
        """Flush any remaining buffered content"""

        session_data = self.streaming_sessions.pop((connection_id, session_id), None)
        if session_data and session_data["buffer"]:
            await self._send_delta(connection_id, session_data["buffer"], session_id)

    async def send_done(
        self,
        connection_id: str,
        result: Optional[LoopResult] = None,
        session_id: Optional[str] = None,
        show_reasoning: bool = False
    ):
        await self.flush_stream(connection_id, session_id)

        event = DoneEvent(session_id=session_id)
        if result is not None:
            event.content = result.visible_content
            if show_reasoning and result.reasoning_content:
                event.reasoning = result.reasoning_content
        await self.connection_manager.send_event(connection_id, event)

    async def send_error(self, connection_id: str, message: str, session_id: Optional[str] = None):
        self.streaming_sessions.pop((connection_id, session_id), None)
        await self.connection_manager.send_error(connection_id, message, session_id=session_id)

    async def send_summary(self, connection_id: str, summary: str, session_id: Optional[str] = None):
        await self.connection_manager.send_event(connection_id, SummaryEvent(content=summary, session_id=session_id))

    async def _send_delta(self, connection_id: str, content: str, session_id: Optional[str]):
        await self.connection_manager.send_event(connection_id, DeltaEvent(content=content, session_id=session_id))
