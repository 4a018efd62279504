from typing import Dict, Any, Optional, List, Literal
from pydantic import BaseModel, Field


class ToolParameters(BaseModel):
    """JSON-schema object describing a tool's arguments"""
    type: Literal["object"] = "object"
    properties: Dict[str, Any] = Field(default_factory=dict)
    required: Optional[List[str]] = None


class ToolDefinition(BaseModel):
    """Tool declaration exposed to the model"""
    name: str = Field(description="Unique tool name")
    description: str = ""
    parameters: ToolParameters = Field(default_factory=ToolParameters)

    def to_declaration(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ToolContext(BaseModel):
    """Who is invoking a tool; passed next to the model's arguments, never part of the schema"""
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
