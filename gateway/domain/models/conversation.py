from typing import Dict, Any, Optional, List, Literal
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class FunctionCall(BaseModel):
    """Function name and raw JSON argument string of a tool call"""
    name: str = ""
    arguments: str = ""


class ToolCallRequest(BaseModel):
    """A tool call requested by the model, assembled from streamed fragments"""
    index: int = 0
    id: str = ""
    type: Literal["function"] = "function"
    function: FunctionCall = Field(default_factory=FunctionCall)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.function.name, "arguments": self.function.arguments},
        }


class ConversationMessage(BaseModel):
    """One entry of the conversation sent to the completion endpoint"""
    model_config = ConfigDict(extra="ignore")

    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCallRequest]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def system(cls, content: str) -> "ConversationMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "ConversationMessage":
        return cls(role="user", content=content)

    def to_payload(self) -> Dict[str, Any]:
        """Wire format; ``content`` is always present, even when null"""

        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_payload() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            payload["name"] = self.name
        return payload


class LoopStatus(str, Enum):
    """Orchestration loop states"""
    STREAMING = "streaming"
    DISPATCHING = "dispatching"
    DONE = "done"
    ABORTED = "aborted"


class LoopResult(BaseModel):
    """Outcome of one orchestration run"""
    status: LoopStatus
    visible_content: str = ""
    reasoning_content: str = ""
    raw_content: str = ""
    iterations: int = 0
    history: List[ConversationMessage] = Field(default_factory=list)
    usage: List[Dict[str, Any]] = Field(default_factory=list)
