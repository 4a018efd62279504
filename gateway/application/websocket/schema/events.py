from typing import Dict, Any, Optional, List, Literal
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from enum import Enum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    """WebSocket event types"""
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"
    SUMMARY = "summary"
    CONNECTION = "connection"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=_utcnow)
    session_id: Optional[str] = None


class DeltaEvent(BaseEvent):
    """A piece of streamed answer text"""
    type: Literal[EventType.DELTA] = EventType.DELTA
    content: str


class DoneEvent(BaseEvent):
    """End of a chat turn"""
    type: Literal[EventType.DONE] = EventType.DONE
    content: Optional[str] = None
    reasoning: Optional[str] = None


class ErrorEvent(BaseEvent):
    type: Literal[EventType.ERROR] = EventType.ERROR
    message: str


class SummaryEvent(BaseEvent):
    """Short summary of the session, sent after ``done`` when requested"""
    type: Literal[EventType.SUMMARY] = EventType.SUMMARY
    content: str


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]
    connection_id: Optional[str] = None


class ChatRequest(BaseModel):
    """Chat frame from a client; camelCase keys are accepted too"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    messages: List[Dict[str, Any]]
    session_id: Optional[str] = Field(None, validation_alias=AliasChoices("session_id", "sessionId"))
    agent_id: Optional[str] = Field(None, validation_alias=AliasChoices("agent_id", "agentId"))
    should_summarize: bool = Field(False, validation_alias=AliasChoices("should_summarize", "shouldSummarize"))


