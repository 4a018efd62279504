from typing import Dict, List, Any, Optional, Callable, Awaitable
from dataclasses import dataclass
import structlog

from gateway.domain.errors import ToolNotFoundError
from gateway.domain.models.tool import ToolDefinition, ToolContext

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[Any]]


@dataclass
class RegisteredTool:
    definition: ToolDefinition
    handler: ToolHandler
    source: str = "local"


class ToolRegistry:
    """Registry for managing available tools"""

    def __init__(self):
        self.tools: Dict[str, RegisteredTool] = {}

    def register_tool(
        self,
        definition: ToolDefinition,
        handler: ToolHandler,
        source: str = "local"
    ):
        """Register a tool; an existing tool with the same name is replaced"""

        name = definition.name
        if not name:
            logger.error("Invalid tool registration attempt", source=source)
            return

        if name in self.tools:
            logger.info("Overwriting tool", tool=name, previous_source=self.tools[name].source, source=source)

        self.tools[name] = RegisteredTool(definition=definition, handler=handler, source=source)

    def unregister_tool(self, name: str) -> bool:
        """Remove a tool; returns False if it was not registered"""

        removed = self.tools.pop(name, None)
        if removed is not None:
            logger.info("Unregistered tool", tool=name, source=removed.source)
        return removed is not None

    def get_tool_definitions(self) -> List[ToolDefinition]:
        """Get all available tool declarations"""

        return [tool.definition for tool in self.tools.values()]

    def get_tool_info(self, name: str) -> Optional[RegisteredTool]:
        """Get information about a specific tool"""

        return self.tools.get(name)

    def get_tools_by_source(self, source: str) -> List[str]:
        return [name for name, tool in self.tools.items() if tool.source == source]

    async def call_tool(self, name: str, args: Dict[str, Any], context: Optional[ToolContext] = None) -> Any:
        """Invoke a tool by name; raises ToolNotFoundError for unknown names"""

        tool = self.tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)

        logger.debug("Executing tool", tool=name, args=args,
                     agent_id=context.agent_id if context else None)
        return await tool.handler(args, context or ToolContext())
